import json
from pathlib import Path
from xml.sax.saxutils import escape

import pytest

from gporecon.models import (
    RIGHT_APPLY,
    RIGHT_EDIT_DELETE_MODIFY,
    AuditContext,
    GpoLink,
    GroupPolicyObject,
    Permission,
    Principal,
    SectionState,
)

DOMAIN_SID = "S-1-5-21-1111-2222-3333"
DOMAIN_ADMINS_SID = f"{DOMAIN_SID}-512"
DOMAIN_COMPUTERS_SID = f"{DOMAIN_SID}-515"
AUTHENTICATED_USERS_SID = "S-1-5-11"
JDOE_SID = f"{DOMAIN_SID}-1105"
GHOST_SID = f"{DOMAIN_SID}-9999"

GUID_A = "{31B2F340-016D-11D2-945F-00C04FB984F9}"
GUID_B = "{6AC1786C-016F-11D2-945F-00C04FB984F9}"
GUID_C = "{0E1D2C3B-4A59-4867-8A9B-1C2D3E4F5A6B}"

GPMC_NS = "http://www.microsoft.com/GroupPolicy/Settings"
TYPES_NS = "http://www.microsoft.com/GroupPolicy/Types"
SECURITY_NS = "http://www.microsoft.com/GroupPolicy/Types/Security"


def _section_xml(tag, enabled=True, content=False, ad=1, sysvol=1):
    ext = ""
    if content:
        ext = (
            "<ExtensionData><Extension><q1:Policy xmlns:q1=\"http://www.microsoft.com/GroupPolicy/Settings/Registry\">"
            "<q1:Name>Prohibit access to Control Panel</q1:Name><q1:State>Enabled</q1:State>"
            "</q1:Policy></Extension><Name>Registry</Name></ExtensionData>"
        )
    return (
        f"<{tag}><VersionDirectory>{ad}</VersionDirectory><VersionSysvol>{sysvol}</VersionSysvol>"
        f"<Enabled>{'true' if enabled else 'false'}</Enabled>{ext}</{tag}>"
    )


def gpo_report_xml(
    guid,
    name,
    *,
    computer=None,
    user=None,
    owner=(DOMAIN_ADMINS_SID, "CONTOSO\\Domain Admins"),
    permissions=None,
    links=None,
):
    if permissions is None:
        permissions = [
            (AUTHENTICATED_USERS_SID, "NT AUTHORITY\\Authenticated Users", RIGHT_APPLY, "Allow"),
            (DOMAIN_ADMINS_SID, "CONTOSO\\Domain Admins", RIGHT_EDIT_DELETE_MODIFY, "Allow"),
        ]
    if links is None:
        links = [("contoso", "contoso.com", True, False)]

    perm_xml = "".join(
        f"<TrusteePermissions><Trustee><SID xmlns=\"{TYPES_NS}\">{sid}</SID>"
        + (f"<Name xmlns=\"{TYPES_NS}\">{escape(tname)}</Name>" if tname else "")
        + f"</Trustee><Type xmlns:xsi=\"http://www.w3.org/2001/XMLSchema-instance\" xsi:type=\"PermissionType\">"
        f"<PermissionType>{kind}</PermissionType></Type><Inherited>false</Inherited>"
        f"<Standard><GPOGroupedAccessEnum>{escape(right)}</GPOGroupedAccessEnum></Standard>"
        f"<AccessMask>0</AccessMask></TrusteePermissions>"
        for sid, tname, right, kind in permissions
    )
    owner_xml = ""
    if owner is not None:
        owner_xml = (
            f"<Owner xmlns=\"{SECURITY_NS}\"><SID xmlns=\"{TYPES_NS}\">{owner[0]}</SID>"
            f"<Name xmlns=\"{TYPES_NS}\">{escape(owner[1])}</Name></Owner>"
        )
    link_xml = "".join(
        f"<LinksTo><SOMName>{escape(som)}</SOMName><SOMPath>{escape(path)}</SOMPath>"
        f"<Enabled>{'true' if enabled else 'false'}</Enabled>"
        f"<NoOverride>{'true' if enforced else 'false'}</NoOverride></LinksTo>"
        for som, path, enabled, enforced in links
    )
    return (
        f"<GPO xmlns=\"{GPMC_NS}\">"
        f"<Identifier><Identifier xmlns=\"{TYPES_NS}\">{guid}</Identifier>"
        f"<Domain xmlns=\"{TYPES_NS}\">contoso.com</Domain></Identifier>"
        f"<Name>{escape(name)}</Name>"
        f"<CreatedTime>2021-03-01T10:00:00</CreatedTime><ModifiedTime>2024-05-06T12:30:00</ModifiedTime>"
        f"<SecurityDescriptor><SDDL xmlns=\"{SECURITY_NS}\">O:DA</SDDL>{owner_xml}"
        f"<PermissionsPresent xmlns=\"{SECURITY_NS}\">true</PermissionsPresent>"
        f"<Permissions xmlns=\"{SECURITY_NS}\"><InheritsFromParent>false</InheritsFromParent>{perm_xml}</Permissions>"
        f"</SecurityDescriptor>"
        f"<FilterDataAvailable>true</FilterDataAvailable>"
        + _section_xml("Computer", **{"content": True, **(computer or {})})
        + _section_xml("User", **{"enabled": False, **(user or {})})
        + link_xml
        + "</GPO>"
    )


@pytest.fixture
def context():
    return AuditContext(domain_sid=DOMAIN_SID, netbios_name="CONTOSO", server="dc01", dns_name="contoso.com")


@pytest.fixture
def make_gpo():
    """Build an in-memory policy with sensible, finding-free defaults."""

    def build(**overrides):
        values = dict(
            guid=GUID_A,
            name="Workstation Baseline",
            computer=SectionState(enabled=True, has_content=True, ad_version=4, sysvol_version=4),
            user=SectionState(enabled=False, has_content=False, ad_version=0, sysvol_version=0),
            owner=Principal(sid=DOMAIN_ADMINS_SID, name="CONTOSO\\Domain Admins", object_class="group"),
            permissions=(
                Permission(AUTHENTICATED_USERS_SID, "NT AUTHORITY\\Authenticated Users", RIGHT_APPLY,
                           trustee_class="wellKnownGroup"),
                Permission(DOMAIN_ADMINS_SID, "CONTOSO\\Domain Admins", RIGHT_EDIT_DELETE_MODIFY,
                           trustee_class="group"),
            ),
            links=(GpoLink(target="contoso.com/Workstations", target_name="Workstations"),),
        )
        values.update(overrides)
        return GroupPolicyObject(**values)

    return build


@pytest.fixture
def write_report(tmp_path):
    reports = tmp_path / "reports"
    reports.mkdir()

    def write(guid, name, filename=None, encoding="utf-8", **kwargs):
        path = reports / (filename or f"{guid}.xml")
        body = gpo_report_xml(guid, name, **kwargs)
        if encoding == "utf-16":
            path.write_text('<?xml version="1.0" encoding="utf-16"?>\n' + body, encoding="utf-16")
        else:
            path.write_text(body, encoding=encoding)
        return path

    write.directory = reports
    return write


@pytest.fixture
def snapshot_file(tmp_path):
    def write(policies, *, principals=None, units=None, domain=None):
        data = {
            "domain": domain if domain is not None else {
                "sid": DOMAIN_SID,
                "netbios_name": "CONTOSO",
                "dns_name": "contoso.com",
                "server": "dc01",
            },
            "policies": [{"guid": g, "name": n} for g, n in policies],
            "principals": principals if principals is not None else [
                {"sid": DOMAIN_ADMINS_SID, "name": "CONTOSO\\Domain Admins", "object_class": "group"},
                {"sid": DOMAIN_COMPUTERS_SID, "name": "CONTOSO\\Domain Computers", "object_class": "group"},
                {"sid": JDOE_SID, "name": "CONTOSO\\jdoe", "object_class": "user"},
            ],
            "organizational_units": units or [],
        }
        path = tmp_path / "snapshot.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return write


def gplink(*segments):
    return "".join(f"[LDAP://cn={guid},cn=policies,cn=system,DC=contoso,DC=com;{status}]" for guid, status in segments)


@pytest.fixture
def sysvol(tmp_path):
    def build(*guids):
        root = tmp_path / "Policies"
        root.mkdir(exist_ok=True)
        for guid in guids:
            (root / guid).mkdir()
            (root / guid / "GPT.INI").write_text("[General]\nVersion=1\n", encoding="utf-8")
        (root / "PolicyDefinitions").mkdir(exist_ok=True)
        return Path(root)

    return build
