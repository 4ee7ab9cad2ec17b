"""The Linux WARP MDM file: its content and how it is written.

The WARP daemon on Linux enrolls headlessly from an XML file at
:data:`LINUX_MDM_PATH` carrying the team slug and service-token
credentials. The file holds a secret, so it is written atomically and is
never readable by anyone but its owner.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

LINUX_MDM_PATH = "/var/lib/cloudflare-warp/mdm.xml"

_ACCESS_DOMAIN_SUFFIX = ".cloudflareaccess.com"
_ACCESS_CLIENT_SUFFIX = ".access"

_ESCAPES = str.maketrans(
    {"&": "&amp;", "'": "&#39;", "<": "&lt;", ">": "&gt;", '"': "&#34;"}
)


def _escape(text: str) -> str:
    return text.translate(_ESCAPES)


def derive_team_slug(domain: str) -> str:
    """The team slug of an Access team domain.

    Accepts ``<slug>.cloudflareaccess.com``, a URL of it, or the bare slug.
    Raises ValueError if no single-label slug remains.
    """
    d = domain.strip()
    if not d:
        raise ValueError("WARPTeamDomain is empty")
    d = d.removeprefix("https://").removeprefix("http://")
    d = d.removesuffix("/")
    d = d.removesuffix(_ACCESS_DOMAIN_SUFFIX)
    if not d or any(c in d for c in " \t\r\n"):
        raise ValueError(f"WARPTeamDomain {domain!r} does not resolve to a usable team slug")
    if any(c in d for c in "./\\"):
        raise ValueError(
            f"WARPTeamDomain {domain!r} does not resolve to a single-label team slug"
        )
    return d


def ensure_access_suffix(client_id: str) -> str:
    """client_id stripped, with ``.access`` appended unless already present or empty."""
    c = client_id.strip()
    if not c or c.endswith(_ACCESS_CLIENT_SUFFIX):
        return c
    return c + _ACCESS_CLIENT_SUFFIX


def render_mdm_xml(org_slug: str, auth_client_id: str, auth_client_secret: str) -> str:
    """The MDM file body, with values escaped and keys in a fixed order.

    Raises ValueError if any argument is empty.
    """
    if not org_slug or not auth_client_id or not auth_client_secret:
        raise ValueError("render_mdm_xml: empty argument")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<dict>\n"
        f"  <organization>{_escape(org_slug)}</organization>\n"
        f"  <auth_client_id>{_escape(auth_client_id)}</auth_client_id>\n"
        f"  <auth_client_secret>{_escape(auth_client_secret)}</auth_client_secret>\n"
        "  <service_mode>warp</service_mode>\n"
        "  <auto_connect>1</auto_connect>\n"
        "  <onboarding>false</onboarding>\n"
        "</dict>\n"
    )


def write_file_atomic_0600(target: str | os.PathLike[str], body: str) -> None:
    """Write body to target through a same-directory temp file and rename.

    The temp file is mode 0600 from the start and the final file is left at
    0600. On failure the temp file is removed and OSError is raised.
    """
    path = Path(target)
    directory = path.parent
    directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".mdm-xml-", dir=directory)
    try:
        os.chmod(tmp_name, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as tmp:
            fd = -1
            tmp.write(body)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if fd >= 0:
            os.close(fd)
        try:
            os.remove(tmp_name)
        except FileNotFoundError:
            pass
        raise
    os.chmod(path, 0o600)