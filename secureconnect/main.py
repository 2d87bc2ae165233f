from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from .settings import Settings
from .tunnel.controller import ConnectionController, build_controller
from .tunnel.exceptions import (
    BusyError,
    ControlPlaneError,
    NegotiationError,
    ProxyStartError,
    TunnelUpError,
)
from .tunnel.models import ConnectionEvent
from .logging_utility import logger

TEMPLATES_DIR = Path(__file__).parent / "templates"


class PortalSelection(BaseModel):
    endpoint: str


class Credentials(BaseModel):
    username: str
    password: str


def create_app(controller: ConnectionController) -> FastAPI:
    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
    events = {"last": None}

    def on_connection_changed(event: ConnectionEvent) -> None:
        events["last"] = event
        logger.info(f"connection-changed: connected={event.connected}")

    controller.add_listener(on_connection_changed)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Service shutting down, tearing down the tunnel")
        controller.shutdown()

    app = FastAPI(title="SecureConnect", lifespan=lifespan)
    app.state.controller = controller

    @app.get("/")
    def home(request: Request):
        """Status page with the current connection"""
        return templates.TemplateResponse(request, "index.html", {
            "connection": controller.snapshot(),
            "stats": controller.get_connection_stats(),
        })

    @app.post("/portal")
    def select_portal(portal: PortalSelection):
        """Point the client at the selected portal's control plane"""
        controller.set_endpoint(portal.endpoint)
        return {"status": "success", "endpoint": portal.endpoint}

    @app.post("/login")
    def login(credentials: Credentials):
        client = controller.client
        try:
            result = client.login(credentials.username, credentials.password)
            client.save_session(controller.settings.session_token_path)
        except ControlPlaneError as e:
            logger.error(f"Login failed: {str(e)}")
            raise HTTPException(status_code=401, detail=str(e))
        return {"status": "success", "user": result.get("user")}

    @app.post("/connect")
    def connect():
        """Negotiate parameters and bring the tunnel up"""
        try:
            status = controller.connect()
        except BusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except NegotiationError as e:
            raise HTTPException(status_code=502, detail=str(e))
        except (TunnelUpError, ProxyStartError) as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"status": "success", "message": "Connected successfully", "connection": status.to_dict()}

    @app.post("/disconnect")
    def disconnect():
        """Tear the tunnel down and restore DNS"""
        try:
            result = controller.disconnect()
        except BusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return result.to_dict()

    @app.get("/status")
    def status():
        return controller.get_status()

    @app.get("/stats")
    def stats():
        return controller.get_connection_stats().to_dict()

    @app.get("/connection")
    def connection():
        last: Optional[ConnectionEvent] = events["last"]
        return {
            "connection": controller.snapshot().to_dict(),
            "last_event": last.to_dict() if last else None,
        }

    return app


app = create_app(build_controller(Settings.load()))
