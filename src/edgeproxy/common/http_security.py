"""HTTP access checks for the proxy's operational endpoints."""

from __future__ import annotations

import hmac
from ipaddress import IPv4Network, IPv6Network, ip_address
from typing import Iterable, Optional

from fastapi import HTTPException, Request, status


def _client_allowed(client_host: str, networks: Iterable[IPv4Network | IPv6Network]) -> bool:
    try:
        address = ip_address(client_host)
    except ValueError:
        return client_host == "localhost"
    return address.is_loopback or any(address in network for network in networks)


def require_metrics_access(
    request: Request,
    token: Optional[str],
    allowed_networks: Iterable[IPv4Network | IPv6Network] = (),
) -> None:
    """Admit a metrics scrape.

    With a token configured the request must present it as a bearer
    credential, wherever it comes from. Without one, only loopback clients
    and clients inside ``allowed_networks`` get through.
    """
    if token:
        auth_header = request.headers.get("authorization") or ""
        if not hmac.compare_digest(auth_header.encode(), f"Bearer {token}".encode()):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    if not client_host or not _client_allowed(client_host, allowed_networks):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted")
