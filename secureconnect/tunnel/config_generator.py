"""Render session parameters into a tunnel-engine configuration document."""

from .models import SessionEndpoint, TunnelParameters

PERSISTENT_KEEPALIVE = 25


def _section(name: str, fields: list[tuple[str, object]]) -> str:
    lines = [f"[{name}]"]
    lines.extend(f"{key} = {value}" for key, value in fields)
    return "\n".join(lines) + "\n"


def render(params: TunnelParameters, endpoint: SessionEndpoint) -> str:
    """
    Build the interface/peer configuration for one session.

    Args:
        params: Parameters issued by the control plane
        endpoint: Effective endpoint, either the gateway or the local relay

    Returns:
        Configuration text ready to be written to the session slot
    """
    interface = [
        ("PrivateKey", params.private_key),
        ("Address", params.address),
        ("DNS", ", ".join(params.dns_servers)),
    ]
    obfs = params.obfuscation
    if obfs is not None:
        interface.extend([
            ("Jc", obfs.jc),
            ("Jmin", obfs.jmin),
            ("Jmax", obfs.jmax),
            ("S1", obfs.s1),
            ("S2", obfs.s2),
            ("H1", obfs.h1),
            ("H2", obfs.h2),
            ("H3", obfs.h3),
            ("H4", obfs.h4),
        ])

    peer = [
        ("PublicKey", params.peer_public_key),
        ("Endpoint", str(endpoint)),
        ("AllowedIPs", ", ".join(params.allowed_ips)),
        ("PersistentKeepalive", PERSISTENT_KEEPALIVE),
    ]
    return _section("Interface", interface) + "\n" + _section("Peer", peer)
