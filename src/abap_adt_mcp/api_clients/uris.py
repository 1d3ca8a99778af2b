"""URI helpers for ADT object paths.

Callers hand in object URIs with or without the ``/sap/bc/adt`` root and
with or without a ``/source/...`` sub-resource. Two normalisations map them
onto stable keys:

* ``normalize_uri`` strips the repository root (generic form).
* ``lock_scope_uri`` additionally cuts everything from ``/source/`` on,
  because ADT locks whole objects even when the source is edited.

Both are idempotent.
"""

import logging
from typing import List, Optional, Tuple
from urllib.parse import quote

from .errors import AdtError, ErrorKind

logger = logging.getLogger(__name__)

ADT_ROOT = "/sap/bc/adt"
SOURCE_SEGMENT = "/source/"
SOURCE_MAIN_SUFFIX = "/source/main"

DEFAULT_LOCK_ACCEPT = (
    "application/vnd.sap.adt.repository.object.v1+xml, application/xml, "
    "application/atom+xml, */*"
)

# (path prefix, required substring or None, Accept value)
DEFAULT_LOCK_ACCEPT_RULES: List[Tuple[str, Optional[str], str]] = [
    ("/ddic/", None, "application/vnd.sap.as+xml"),
    (
        "/oo/",
        "/classes/",
        "application/vnd.sap.adt.oo.classes.v4+xml, "
        "application/vnd.sap.adt.oo.classes.v2+xml, application/xml, */*",
    ),
    (
        "/oo/",
        "/interfaces/",
        "application/vnd.sap.adt.oo.interfaces.v4+xml, "
        "application/vnd.sap.adt.oo.interfaces.v2+xml, application/xml, */*",
    ),
    (
        "/programs/",
        None,
        "application/vnd.sap.adt.programs.programs.v2+xml, application/xml, */*",
    ),
    (
        "/functions/",
        None,
        "application/vnd.sap.adt.functions.v3+xml, "
        "application/vnd.sap.adt.functions.v2+xml, application/xml, */*",
    ),
    ("/ddls/", None, "application/vnd.sap.adt.ddls.v1+xml, application/xml, */*"),
]

# Ordered: more specific fragments first (function modules live under groups).
OBJECT_TYPE_RULES: List[Tuple[str, str]] = [
    ("/ddic/domains/", "DOMA/DD"),
    ("/ddic/dataelements/", "DTEL/DE"),
    ("/ddic/tables/", "TABL/DT"),
    ("/ddic/structures/", "STRU/I"),
    ("/ddic/tabletypes/", "TTYP/DA"),
    ("/oo/classes/", "CLAS/OC"),
    ("/oo/interfaces/", "INTF/OI"),
    ("/programs/programs/", "PROG/P"),
    ("/programs/includes/", "PROG/I"),
    ("/fmodules/", "FUGR/FF"),
    ("/functions/groups/", "FUGR/F"),
    ("/ddls/sources/", "DDLS/DF"),
    ("/srvd/sources/", "SRVD/SRV"),
    ("/srvb/sources/", "SRVB/SVB"),
]
UNKNOWN_OBJECT_TYPE = "UNKN/XX"


def normalize_uri(uri: Optional[str]) -> str:
    """Strip the ``/sap/bc/adt`` root so absolute and relative forms agree.

    Raises:
        AdtError: ``validation`` kind for an empty or missing URI
    """
    if not uri or not uri.strip():
        raise AdtError(
            ErrorKind.VALIDATION,
            "URI cannot be undefined or empty",
            {"field": "uri", "value": uri},
        )
    uri = uri.strip()
    if not uri.startswith("/"):
        uri = f"/{uri}"
    while uri == ADT_ROOT or uri.startswith(ADT_ROOT + "/"):
        uri = uri[len(ADT_ROOT):] or "/"
    return uri


def lock_scope_uri(uri: Optional[str]) -> str:
    """Object-level URI used as the lock key."""
    normalized = normalize_uri(uri)
    if SOURCE_SEGMENT in normalized:
        return normalized.split(SOURCE_SEGMENT, 1)[0]
    return normalized


def source_uri(uri: Optional[str]) -> str:
    """URI of the main source of an object, ``/source/main`` appended once."""
    normalized = normalize_uri(uri)
    if normalized.endswith(SOURCE_MAIN_SUFFIX):
        return normalized
    return f"{normalized}{SOURCE_MAIN_SUFFIX}"


def full_uri(uri: Optional[str]) -> str:
    """Absolute ADT URI, as required inside object-reference payloads."""
    return f"{ADT_ROOT}{normalize_uri(uri)}"


def object_name_from_uri(uri: str) -> str:
    """Last path segment of an object URI (the object name)."""
    scoped = lock_scope_uri(uri)
    parts = [part for part in scoped.split("/") if part]
    return parts[-1] if parts else scoped


def encode_object_name(name: str) -> str:
    """Lower-case an object name and percent-encode namespace slashes.

    ``/SMB98/PARAMS`` becomes ``%2fsmb98%2fparams``.
    """
    return quote(name.lower(), safe="").replace("%2F", "%2f")


def build_object_uri(uri_prefix: str, object_name: str) -> str:
    return f"{uri_prefix.rstrip('/')}/{encode_object_name(object_name)}"


def build_function_module_uri(
    function_group: str, function_name: Optional[str] = None
) -> str:
    base = f"/functions/groups/{encode_object_name(function_group)}/fmodules"
    if function_name:
        return f"{base}/{encode_object_name(function_name)}"
    return base


def infer_object_type(uri: str) -> str:
    """Infer the ADT object type code (e.g. ``PROG/P``) from a URI."""
    normalized = normalize_uri(uri)
    for fragment, object_type in OBJECT_TYPE_RULES:
        if fragment in normalized:
            return object_type
    logger.warning(f"Could not infer object type from URI: {uri}, using default")
    return UNKNOWN_OBJECT_TYPE


class AcceptHeaderTable:
    """Accept header to send with a lock request, per object family.

    The server rejects lock requests with a generic Accept value for some
    families (DDIC in particular). The rules are data, so new families can
    be registered without touching the client.
    """

    def __init__(
        self,
        rules: Optional[List[Tuple[str, Optional[str], str]]] = None,
        default: str = DEFAULT_LOCK_ACCEPT,
    ):
        self._rules = list(DEFAULT_LOCK_ACCEPT_RULES if rules is None else rules)
        self.default = default

    def register(
        self, prefix: str, accept: str, contains: Optional[str] = None
    ) -> None:
        """Add a rule that takes precedence over the existing ones."""
        self._rules.insert(0, (prefix, contains, accept))

    def select(self, uri: str) -> str:
        scoped = lock_scope_uri(uri)
        for prefix, contains, accept in self._rules:
            if not scoped.startswith(prefix):
                continue
            if contains is not None and contains not in scoped:
                continue
            return accept
        return self.default

    @property
    def rules(self) -> List[Tuple[str, Optional[str], str]]:
        return list(self._rules)
