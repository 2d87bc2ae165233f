import uvicorn
from secureconnect.main import app
from secureconnect.logging_utility import logger


if __name__=='__main__':
    logger.info("Starting SecureConnect service")
    # loopback only
    uvicorn.run(app, host="127.0.0.1", port=8000)
