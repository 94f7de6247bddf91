"""Decoder for the ``gPLink`` attribute of a domain or organizational unit.

The attribute is a run of bracketed segments, each ``LDAP://<gpo dn>;<status>``.
GPMC numbers link order so that the last segment in the string is order 1
(highest precedence); new links are prepended and therefore get the highest
number.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Optional

from .models import LinkOrderEntry, OrganizationalUnit

GUID_PATTERN = re.compile(r"\{?([0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12})\}?")
_DN_GUID_PATTERN = re.compile(r"^\s*cn=(\{[0-9A-Fa-f-]{36}\})\s*,", re.IGNORECASE)
_LDAP_PREFIX = re.compile(r"^\s*ldap://", re.IGNORECASE)
_STATUS_PATTERN = re.compile(r"[0-9]+")

# status digit -> (linked, enforced)
LINK_STATUS: dict[str, tuple[bool, bool]] = {
    "0": (True, False),
    "1": (False, False),
    "2": (True, True),
    "3": (False, True),
}


@dataclass(frozen=True)
class DecodedLink:
    gpo_dn: str
    status_code: str
    linked: Optional[bool]
    enforced: Optional[bool]
    order: int
    malformed: bool = False

    @property
    def status_known(self) -> bool:
        return self.linked is not None and self.enforced is not None


def normalize_guid(value: str) -> Optional[str]:
    m = GUID_PATTERN.fullmatch(value.strip())
    if not m:
        return None
    return "{" + m.group(1).upper() + "}"


def gpo_guid_from_dn(dn: str) -> Optional[str]:
    m = _DN_GUID_PATTERN.match(dn)
    if not m:
        return None
    return normalize_guid(m.group(1))


def _split_segments(raw: str) -> list[tuple[str, bool]]:
    if "[" not in raw:
        return [(raw, False)]

    segments: list[tuple[str, bool]] = []
    for chunk in raw.split("[")[1:]:
        body, closed, _rest = chunk.partition("]")
        if not body.strip() and not closed:
            continue
        segments.append((body, bool(closed)))
    return segments


def _decode_segment(body: str, closed: bool, order: int) -> DecodedLink:
    path, sep, status = body.rpartition(";")
    if not sep:
        return DecodedLink(
            gpo_dn=_LDAP_PREFIX.sub("", body).strip(),
            status_code="",
            linked=None,
            enforced=None,
            order=order,
            malformed=True,
        )

    gpo_dn = _LDAP_PREFIX.sub("", path).strip()
    status = status.strip()
    malformed = not closed or not gpo_dn or not _STATUS_PATTERN.fullmatch(status)
    known = None if malformed else LINK_STATUS.get(status)
    linked, enforced = known if known else (None, None)
    return DecodedLink(
        gpo_dn=gpo_dn,
        status_code=status,
        linked=linked,
        enforced=enforced,
        order=order,
        malformed=malformed,
    )


def decode_gplink(raw: Optional[str]) -> list[DecodedLink]:
    """Decode a raw ``gPLink`` value into links in attribute order.

    Segment ``k`` of ``N`` (0-based) is given order ``N - k``. Unparseable
    segments keep their slot with an unknown status instead of being dropped,
    so the remaining orders are not shifted.
    """
    if not raw or not raw.strip():
        return []

    segments = _split_segments(raw)
    total = len(segments)
    return [
        _decode_segment(body, closed, total - index)
        for index, (body, closed) in enumerate(segments)
    ]


def build_link_order(ou: OrganizationalUnit, names_by_guid: Mapping[str, str]) -> list[LinkOrderEntry]:
    entries: list[LinkOrderEntry] = []
    for link in decode_gplink(ou.gplink):
        guid = gpo_guid_from_dn(link.gpo_dn)
        entries.append(
            LinkOrderEntry(
                ou_name=ou.name,
                ou_dn=ou.dn,
                gpo_dn=link.gpo_dn,
                gpo_guid=guid,
                gpo_name=names_by_guid.get(guid) if guid else None,
                linked=link.linked,
                enforced=link.enforced,
                order=link.order,
                status_code=link.status_code,
                malformed=link.malformed,
            )
        )
    return entries
