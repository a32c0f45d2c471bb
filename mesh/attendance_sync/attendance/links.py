"""
Check-in links.

A check-in link is the only way a student reaches a session. It carries
the session id and the admin's public key in the URL fragment:

    https://host/app#/checkin?session=<sessionId>&pub=<adminPub>
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, quote, urlsplit

from ..errors import MissingAddressError

CHECKIN_ROUTE = "/checkin"


@dataclass(frozen=True)
class CheckInLink:
    session_id: str
    admin_pub: str

    def to_url(self, base_url: str) -> str:
        return build_checkin_link(base_url, self.session_id, self.admin_pub)


def build_checkin_link(base_url: str, session_id: str, admin_pub: str) -> str:
    """Build the URL encoded into the session QR code.

    Any fragment already on ``base_url`` is replaced.
    """
    base = base_url.split("#", 1)[0]
    return (
        f"{base}#{CHECKIN_ROUTE}"
        f"?session={quote(session_id, safe='')}&pub={quote(admin_pub, safe='')}"
    )


def parse_checkin_link(url: str) -> CheckInLink:
    """Extract the session address from a scanned URL.

    Parameters are read from the fragment route; a plain query string is
    accepted as a fallback.

    Raises:
        MissingAddressError: If the session id or admin public key is missing
    """
    parts = urlsplit(url)
    params = {}

    fragment = parts.fragment
    if "?" in fragment:
        params = parse_qs(fragment.split("?", 1)[1])
    if not params and parts.query:
        params = parse_qs(parts.query)

    session_id = (params.get("session") or [""])[0].strip()
    admin_pub = (params.get("pub") or [""])[0].strip()

    missing = [name for name, value in (("session", session_id), ("pub", admin_pub)) if not value]
    if missing:
        raise MissingAddressError(
            "Invalid QR Code. Missing session details.",
            missing=missing,
        )
    return CheckInLink(session_id=session_id, admin_pub=admin_pub)
