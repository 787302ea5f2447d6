"""XML documents as a small tagged tree.

Vendor feeds mix shapes freely: the same element can be plain text in one
record and carry attributes or children in the next. Parsing resolves every
element once into one of three node types:

* ``XmlText`` - an element with only text content
* ``XmlMap`` - an element with attributes (``@name`` keys), children and
  optionally its own text (``#text`` key)
* ``XmlList`` - repeated sibling elements sharing one tag
"""

from __future__ import annotations

import io
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from html.entities import name2codepoint
from typing import Any, Union

from app.ingest.errors import ParseError

TEXT_KEY = "#text"
ATTRIBUTE_PREFIX = "@"

XML_ENTITIES = {b"amp", b"lt", b"gt", b"quot", b"apos"}
ENTITY_RE = re.compile(rb"&([A-Za-z][A-Za-z0-9]*);")
BARE_AMPERSAND_RE = re.compile(rb"&(?!#[0-9]+;|#x[0-9A-Fa-f]+;|[A-Za-z][A-Za-z0-9]*;)")
CDATA_RE = re.compile(rb"(<!\[CDATA\[.*?\]\]>)", re.DOTALL)
DECLARATION_RE = re.compile(r"^\s*<\?xml[^>]*\?>")


@dataclass(slots=True)
class XmlText:
    value: str = ""


@dataclass(slots=True)
class XmlMap:
    children: dict[str, "XmlNode"] = field(default_factory=dict)

    def get(self, key: str) -> "XmlNode | None":
        return self.children.get(key)

    def keys(self) -> list[str]:
        return list(self.children)


@dataclass(slots=True)
class XmlList:
    items: list["XmlNode"] = field(default_factory=list)


XmlNode = Union[XmlText, XmlMap, XmlList]


def parse_xml(
    raw: bytes | str,
    *,
    strip_namespaces: bool = False,
    namespace_prefixes: dict[str, str] | None = None,
) -> XmlMap:
    """Parse a document into a map holding the root element under its tag.

    ``namespace_prefixes`` pins the prefix used for a namespace URI regardless
    of the prefix the document declares.
    """
    data = _prepare(raw)
    prefixes: dict[str, str] = dict(namespace_prefixes or {})
    root: ET.Element | None = None
    try:
        for event, item in ET.iterparse(io.BytesIO(data), events=("start-ns", "end")):
            if event == "start-ns":
                prefix, uri = item
                prefixes.setdefault(uri, prefix)
            else:
                root = item
    except ET.ParseError as exc:
        raise ParseError(f"XML parsing failed: {exc}") from exc
    if root is None:
        raise ParseError("XML parsing failed: document has no root element")

    def name_of(tag: str) -> str:
        if not tag.startswith("{"):
            return tag
        uri, _, local = tag[1:].partition("}")
        prefix = prefixes.get(uri)
        if strip_namespaces or not prefix:
            return local
        return f"{prefix}:{local}"

    return XmlMap({name_of(root.tag): _convert(root, name_of)})


def _prepare(raw: bytes | str) -> bytes:
    if isinstance(raw, str):
        # the declared encoding no longer applies once the text is decoded
        raw = DECLARATION_RE.sub("", raw, count=1).encode("utf-8")
    parts = CDATA_RE.split(raw)
    for index in range(0, len(parts), 2):
        fixed = ENTITY_RE.sub(_replace_entity, parts[index])
        parts[index] = BARE_AMPERSAND_RE.sub(b"&amp;", fixed)
    return b"".join(parts)


def _replace_entity(match: re.Match[bytes]) -> bytes:
    name = match.group(1)
    if name in XML_ENTITIES:
        return match.group(0)
    codepoint = name2codepoint.get(name.decode("ascii"))
    if codepoint is None:
        return b"&amp;" + name + b";"
    return b"&#%d;" % codepoint


def _convert(element: ET.Element, name_of) -> XmlNode:
    children = list(element)
    text = (element.text or "").strip()
    if not children and not element.attrib:
        return XmlText(text)

    entries: dict[str, XmlNode] = {}
    for key, value in element.attrib.items():
        entries[ATTRIBUTE_PREFIX + name_of(key)] = XmlText(value.strip())
    for sub in children:
        key = name_of(sub.tag)
        node = _convert(sub, name_of)
        existing = entries.get(key)
        if existing is None:
            entries[key] = node
        elif isinstance(existing, XmlList):
            existing.items.append(node)
        else:
            entries[key] = XmlList([existing, node])
    if text:
        entries[TEXT_KEY] = XmlText(text)
    return XmlMap(entries)


def child(node: XmlNode | None, key: str) -> XmlNode | None:
    if isinstance(node, XmlMap):
        return node.get(key)
    return None


def walk(node: XmlNode | None, path: list[str] | tuple[str, ...]) -> XmlNode | None:
    current = node
    for key in path:
        current = child(current, key)
        if current is None:
            return None
    return current


def as_list(node: XmlNode | None) -> list[XmlNode]:
    if node is None:
        return []
    if isinstance(node, XmlList):
        return list(node.items)
    if isinstance(node, XmlText) and not node.value:
        return []
    return [node]


def text_of(node: XmlNode | None) -> str | None:
    """Scalar text of a node: its own text, or its first text-bearing child."""
    if node is None:
        return None
    if isinstance(node, XmlText):
        return node.value
    if isinstance(node, XmlList):
        return text_of(node.items[0]) if node.items else None
    own = node.get(TEXT_KEY)
    if isinstance(own, XmlText):
        return own.value
    for value in node.children.values():
        if isinstance(value, XmlText) and value.value:
            return value.value
    return None


def to_python(node: XmlNode | None) -> Any:
    if node is None:
        return None
    if isinstance(node, XmlText):
        return node.value
    if isinstance(node, XmlList):
        return [to_python(item) for item in node.items]
    return {key: to_python(value) for key, value in node.children.items()}
