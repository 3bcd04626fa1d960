"""Convert XML documents into plain nested mappings.

The shape mirrors what most XML-to-object converters produce:

* the document is ``{root_tag: element}``;
* child elements are grouped by qualified tag (``dc:title``) into lists;
* attributes live under ``"$"`` and character data under ``"_"``;
* an element without attributes or children collapses to its text.

Because of that last rule a text-bearing node is either a ``str`` or a
mapping carrying ``"_"``. :func:`node_text` is the only place that has to
care which one it got.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Union

from lxml import etree as LXML_ET

TEXT_KEY = "_"
ATTRS_KEY = "$"

TextNode = Union[str, Mapping[str, Any]]
XmlNode = Union[str, dict]


class XmlParseError(ValueError):
    pass


def _local_name(tag: str) -> str:
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _qualified_name(node: LXML_ET._Element) -> str:
    local = _local_name(node.tag)
    prefix = node.prefix
    return f"{prefix}:{local}" if prefix else local


def _element_text(node: LXML_ET._Element) -> str:
    parts = [node.text or ""]
    for child in node:
        parts.append(child.tail or "")
    return "".join(parts).strip()


def _element_to_node(node: LXML_ET._Element) -> XmlNode:
    attrs = {_local_name(str(key)): str(value) for key, value in node.attrib.items()}
    children: dict[str, list[XmlNode]] = {}
    for child in node:
        if not isinstance(child.tag, str):
            continue
        children.setdefault(_qualified_name(child), []).append(_element_to_node(child))
    text = _element_text(node)
    if not attrs and not children:
        return text

    result: dict[str, Any] = {}
    if attrs:
        result[ATTRS_KEY] = attrs
    if text:
        result[TEXT_KEY] = text
    result.update(children)
    return result


def parse_xml(raw: bytes) -> dict[str, XmlNode]:
    parser = LXML_ET.XMLParser(resolve_entities=False, no_network=True, recover=False)
    try:
        root = LXML_ET.fromstring(raw, parser=parser)
    except (LXML_ET.XMLSyntaxError, ValueError) as exc:
        raise XmlParseError(str(exc)) from exc
    if root is None:
        raise XmlParseError("empty document")
    return {_qualified_name(root): _element_to_node(root)}


def node_text(node: Optional[object], default: str = "") -> str:
    if node is None:
        return default
    if isinstance(node, list):
        return node_text(node[0], default) if node else default
    if isinstance(node, str):
        text = node.strip()
    elif isinstance(node, Mapping):
        raw = node.get(TEXT_KEY)
        text = raw.strip() if isinstance(raw, str) else ""
    else:
        text = ""
    return text or default


def children_by_local_name(node: Optional[object], local_name: str) -> list[XmlNode]:
    """Collect children whose tag matches ``local_name`` under any prefix."""
    if not isinstance(node, Mapping):
        return []
    matched: list[XmlNode] = []
    for key, value in node.items():
        if key in {TEXT_KEY, ATTRS_KEY} or not isinstance(value, list):
            continue
        if key.rsplit(":", 1)[-1] == local_name:
            matched.extend(value)
    return matched


def attribute(node: Optional[object], name: str, default: str = "") -> str:
    if not isinstance(node, Mapping):
        return default
    attrs = node.get(ATTRS_KEY)
    if not isinstance(attrs, Mapping):
        return default
    value = attrs.get(name)
    return str(value).strip() if value is not None else default
