"""XML encode/decode for ADT payloads.

Conventions shared by ``decode`` and ``encode``:

* attributes are keys with an ``@`` prefix (``@adtcore:uri``)
* element text next to attributes or children lives under ``#text``
* namespace prefixes are kept verbatim (``adtcore:objectReference``)
* an element that occurs more than once under the same parent is a list,
  a single occurrence is not; use ``as_list`` when cardinality varies
"""

import io
import logging
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

from .errors import AdtError, ErrorKind

logger = logging.getLogger(__name__)

ATTRIBUTE_PREFIX = "@"
TEXT_KEY = "#text"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'


class XmlParseError(AdtError):
    """Raised when a payload is not well-formed XML."""

    def __init__(self, message: str, xml_content: Optional[str] = None):
        super().__init__(
            ErrorKind.INTERNAL,
            message,
            {
                "code": "XML_PARSE_ERROR",
                "xml_content": xml_content[:500] if xml_content else xml_content,
            },
        )


def _qualified(name: str, prefixes: Dict[str, str]) -> str:
    """Turn ``{uri}local`` back into ``prefix:local``."""
    if not name.startswith("{"):
        return name
    uri, local = name[1:].split("}", 1)
    prefix = prefixes.get(uri)
    return f"{prefix}:{local}" if prefix else local


def _element_to_value(element: ET.Element, prefixes: Dict[str, str]) -> Any:
    node: Dict[str, Any] = {}
    for name, value in element.attrib.items():
        node[ATTRIBUTE_PREFIX + _qualified(name, prefixes)] = value

    for child in element:
        key = _qualified(child.tag, prefixes)
        value = _element_to_value(child, prefixes)
        if key in node:
            existing = node[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                node[key] = [existing, value]
        else:
            node[key] = value

    text = (element.text or "").strip()
    if not node:
        return text
    if text:
        node[TEXT_KEY] = text
    return node


def decode(text: str) -> Dict[str, Any]:
    """Parse an XML document into nested dictionaries.

    Raises:
        XmlParseError: If the document is not well-formed
    """
    if not text or not text.strip():
        return {}

    prefixes: Dict[str, str] = {}
    data = text.encode("utf-8") if isinstance(text, str) else text
    try:
        parser = ET.iterparse(io.BytesIO(data), events=("start-ns", "end"))
        root = None
        for event, item in parser:
            if event == "start-ns":
                prefix, uri = item
                prefixes.setdefault(uri, prefix)
            else:
                root = item
    except ET.ParseError as e:
        raise XmlParseError(f"Failed to parse XML: {e}", text) from e

    if root is None:
        return {}
    return {_qualified(root.tag, prefixes): _element_to_value(root, prefixes)}


def _build(parent: ET.Element, key: str, value: Any) -> None:
    for item in as_list(value):
        child = ET.SubElement(parent, key)
        _fill(child, item)


def _fill(element: ET.Element, value: Any) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if item is None:
                continue
            if key == TEXT_KEY:
                element.text = str(item)
            elif key.startswith(ATTRIBUTE_PREFIX):
                element.set(key[len(ATTRIBUTE_PREFIX):], _scalar(item))
            else:
                _build(element, key, item)
    elif value is not None:
        element.text = _scalar(value)


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode(obj: Dict[str, Any], declaration: bool = True) -> str:
    """Serialise a single-root dictionary to an XML document."""
    if not isinstance(obj, dict) or len(obj) != 1:
        raise ValueError("encode expects a dictionary with exactly one root element")

    (root_key, root_value), = obj.items()
    root = ET.Element(root_key)
    _fill(root, root_value)
    body = ET.tostring(root, encoding="unicode")
    return f"{XML_DECLARATION}\n{body}" if declaration else body


def as_list(value: Any) -> List[Any]:
    """Normalise a maybe-repeated element to a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def find_elements(tree: Any, name: str) -> List[Any]:
    """Collect every element called ``name``, with or without namespace prefix."""
    results: List[Any] = []

    def search(current: Any) -> None:
        if isinstance(current, list):
            for item in current:
                search(item)
            return
        if not isinstance(current, dict):
            return
        for key, value in current.items():
            if key.startswith(ATTRIBUTE_PREFIX) or key == TEXT_KEY:
                continue
            if key == name or key.endswith(f":{name}"):
                results.extend(as_list(value))
            search(value)

    search(tree)
    return results


def get_attribute(element: Any, name: str, default: Any = None) -> Any:
    """Read attribute ``name`` whether or not it carries a namespace prefix."""
    if not isinstance(element, dict):
        return default
    direct = element.get(ATTRIBUTE_PREFIX + name)
    if direct is not None:
        return direct
    for key, value in element.items():
        if key.startswith(ATTRIBUTE_PREFIX) and key.endswith(f":{name}"):
            return value
    return default


def get_text(element: Any) -> str:
    """Text content of a decoded element (scalar or ``#text``)."""
    if element is None:
        return ""
    if isinstance(element, dict):
        return str(element.get(TEXT_KEY, ""))
    return str(element)
