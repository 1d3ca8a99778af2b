"""Parsing of ADT response bodies.

Structured decoding via ``xml_codec`` is tried first. The few fields the
server does not reliably deliver as well-formed XML (the lock handle, the
``#start=line,col`` fragment inside ``href``/``uri`` attributes, messages in
broken bodies) fall back to pattern extraction here and nowhere else.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from .models import Message, SearchResult, TransportRequest
from .xml_codec import (
    XmlParseError,
    decode,
    find_elements,
    get_attribute,
    get_text,
)

logger = logging.getLogger(__name__)

_LOCK_HANDLE_RE = re.compile(r"<LOCK_HANDLE>([^<]+)</LOCK_HANDLE>", re.IGNORECASE)
_LOCK_FIELD_RE = r"<{0}>([^<]*)</{0}>"
_LOCATION_RE = re.compile(r"#start=(\d+),(\d+)")
_MSG_RE = re.compile(r"<(?:\w+:)?msg\b([^>]*?)(?:/>|>(.*?)</(?:\w+:)?msg>)", re.S)
_ATTR_RE = re.compile(r"([\w:.-]+)=\"([^\"]*)\"")
_TXT_RE = re.compile(r"<txt>(.*?)</txt>", re.S)

ERROR_SEVERITIES = {"E", "A", "X"}
_SEVERITY_TYPES = {"W": "warning", "S": "success"}


def severity_type(code: Any) -> str:
    """Map an ADT severity code to ``error``/``warning``/``success``/``info``."""
    code = str(code or "I").upper()
    if code in ERROR_SEVERITIES:
        return "error"
    return _SEVERITY_TYPES.get(code, "info")


def parse_location(ref: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """Extract ``(line, column)`` from a ``...#start=line,col;end=...`` reference."""
    if not ref:
        return None, None
    match = _LOCATION_RE.search(ref)
    if not match:
        return None, None
    return int(match.group(1)), int(match.group(2))


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _safe_decode(text: Optional[str]) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    try:
        return decode(text)
    except XmlParseError:
        logger.debug("Response is not well-formed XML, using pattern fallback")
        return None


# ---------------------------------------------------------------------------
# Lock responses
# ---------------------------------------------------------------------------


def parse_lock_response(text: Optional[str]) -> Dict[str, Optional[str]]:
    """Read the lock handle and transport info from a LOCK response.

    Returns a dict with ``lock_handle`` (None when absent),
    ``transport_number``, ``transport_owner`` and ``transport_text``.
    """
    result: Dict[str, Optional[str]] = {
        "lock_handle": None,
        "transport_number": None,
        "transport_owner": None,
        "transport_text": None,
    }
    if not text:
        return result

    fields = {
        "lock_handle": "LOCK_HANDLE",
        "transport_number": "CORRNR",
        "transport_owner": "CORRUSER",
        "transport_text": "CORRTEXT",
    }

    tree = _safe_decode(text)
    if tree is not None:
        for key, tag in fields.items():
            found = find_elements(tree, tag)
            if found:
                value = get_text(found[0]).strip()
                result[key] = value or None

    if not result["lock_handle"]:
        match = _LOCK_HANDLE_RE.search(text)
        if match:
            result["lock_handle"] = match.group(1).strip()
        for key, tag in fields.items():
            if key == "lock_handle" or result[key]:
                continue
            match = re.search(_LOCK_FIELD_RE.format(tag), text, re.IGNORECASE)
            if match and match.group(1).strip():
                result[key] = match.group(1).strip()

    return result


# ---------------------------------------------------------------------------
# Activation / syntax check messages
# ---------------------------------------------------------------------------


def _short_text(element: Dict[str, Any]) -> str:
    short_text = element.get("shortText")
    if short_text is None:
        return ""
    if isinstance(short_text, dict):
        txt = short_text.get("txt")
        if isinstance(txt, list):
            return " ".join(get_text(t) for t in txt)
        return get_text(txt) if txt is not None else get_text(short_text)
    return str(short_text)


def _msg_from_element(element: Any) -> Message:
    if not isinstance(element, dict):
        return Message(type="info", message=str(element))

    code = str(get_attribute(element, "type") or "I")
    text = get_text(element) or _short_text(element)
    if not text:
        text = str(get_attribute(element, "objDescr") or "")

    line = _to_int(get_attribute(element, "line"))
    column = _to_int(get_attribute(element, "column"))
    href_line, href_column = parse_location(get_attribute(element, "href"))
    if href_line is not None:
        line, column = href_line, href_column

    return Message(
        type=severity_type(code),
        message=text,
        severity=code,
        line=line,
        column=column,
        object_uri=get_attribute(element, "uri"),
    )


def _msg_from_pattern(attrs_text: str, inner: Optional[str]) -> Message:
    attrs: Dict[str, str] = {}
    for name, value in _ATTR_RE.findall(attrs_text):
        attrs[name.split(":", 1)[-1]] = value

    code = attrs.get("type", "I")
    text = ""
    if inner:
        txt = _TXT_RE.search(inner)
        text = (txt.group(1) if txt else re.sub(r"<[^>]+>", "", inner)).strip()
    if not text:
        text = attrs.get("objDescr", "")

    line = _to_int(attrs.get("line"))
    column = _to_int(attrs.get("column"))
    href_line, href_column = parse_location(attrs.get("href"))
    if href_line is not None:
        line, column = href_line, href_column

    return Message(
        type=severity_type(code),
        message=text,
        severity=code,
        line=line,
        column=column,
    )


def _message_from_generic(element: Any) -> Message:
    """``<message>`` elements used by some endpoints instead of ``<msg>``."""
    if not isinstance(element, dict):
        return Message(type="info", message=str(element))
    code = str(
        get_attribute(element, "type") or get_attribute(element, "severity") or "I"
    )
    text = get_text(element) or get_text(element.get("text"))
    return Message(type=severity_type(code), message=text, severity=code)


def parse_activation_messages(text: Optional[str]) -> Tuple[bool, List[Message]]:
    """Parse an activation response.

    Returns:
        ``(success, messages)``; any error-severity message means failure
    """
    messages: List[Message] = []
    if not text:
        return True, messages

    tree = _safe_decode(text)
    if tree is None:
        messages = [_msg_from_pattern(a, i) for a, i in _MSG_RE.findall(text)]
    else:
        messages = [_msg_from_element(m) for m in find_elements(tree, "msg")]
        messages.extend(
            _message_from_generic(m) for m in find_elements(tree, "message")
        )

    success = not any(m.is_error for m in messages)
    return success, messages


def parse_check_messages(text: Optional[str]) -> Tuple[bool, List[Message]]:
    """Parse a syntax-check (pre-audit) response.

    Handles the check-run format (``chkrun:checkMessage``) and the
    activation format (``msg``). Returns ``(has_errors, messages)``.
    """
    messages: List[Message] = []
    if not text:
        return False, messages

    tree = _safe_decode(text)
    if tree is None:
        messages = [_msg_from_pattern(a, i) for a, i in _MSG_RE.findall(text)]
        return any(m.is_error for m in messages), messages

    check_messages = find_elements(tree, "checkMessage")
    for element in check_messages:
        code = str(get_attribute(element, "type") or "I")
        message_text = str(get_attribute(element, "shortText") or "")
        uri = get_attribute(element, "uri")
        line, column = parse_location(uri)
        if message_text:
            messages.append(
                Message(
                    type=severity_type(code),
                    message=message_text,
                    severity=code,
                    line=line,
                    column=column,
                    object_uri=uri,
                )
            )

    if not check_messages:
        messages = [_msg_from_element(m) for m in find_elements(tree, "msg")]

    has_errors = any(m.is_error for m in messages)

    # Inactive objects with error links but no explicit messages
    inactive = find_elements(tree, "inactiveObject") or find_elements(
        tree, "inactiveObjects"
    )
    if not messages and inactive:
        for link in find_elements(tree, "link"):
            rel = str(get_attribute(link, "rel") or "")
            if "error" in rel or "message" in rel:
                has_errors = True
                messages.append(
                    Message(
                        type="error",
                        message="Object has syntax errors and cannot be activated",
                        severity="E",
                    )
                )
                break

    return has_errors, messages


# ---------------------------------------------------------------------------
# Search and transports
# ---------------------------------------------------------------------------


def parse_search_results(text: Optional[str]) -> List[SearchResult]:
    tree = _safe_decode(text)
    if tree is None:
        return []
    results = []
    for entry in find_elements(tree, "objectReference"):
        package = get_attribute(entry, "packageName")
        results.append(
            SearchResult(
                uri=str(get_attribute(entry, "uri", "")),
                name=str(get_attribute(entry, "name", "")),
                type=str(get_attribute(entry, "type", "")),
                package=str(package) if package else None,
                description=get_attribute(entry, "description"),
            )
        )
    return results


def parse_transport_requests(text: Optional[str]) -> List[TransportRequest]:
    tree = _safe_decode(text)
    if tree is None:
        return []
    return [
        TransportRequest(
            number=str(get_attribute(entry, "number", "")),
            description=str(get_attribute(entry, "desc", "")),
            owner=str(get_attribute(entry, "owner", "")),
            status=str(get_attribute(entry, "status", "")),
        )
        for entry in find_elements(tree, "request")
    ]


def find_deletion_failure(text: Optional[str]) -> Optional[str]:
    """Reason a deletion check/delete response reports failure, if any."""
    tree = _safe_decode(text)
    if tree is None:
        return None
    errors = find_elements(tree, "error")
    if errors:
        first = errors[0]
        reason = get_text(first)
        if not reason and isinstance(first, dict):
            reason = get_text(first.get("message"))
        return reason or "Deletion failed"
    if find_elements(tree, "notAllowed"):
        return "Object deletion is not allowed"
    if find_elements(tree, "failed"):
        return "Object deletion failed"
    return None
