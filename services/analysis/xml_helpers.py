"""
Extraction helpers shared by the ShowPlan parser.

Everything here is tolerant: missing or malformed attributes become 0, False
or None instead of raising.
"""
import math
import xml.etree.ElementTree as ET
from typing import Iterator, List, Optional

SHOWPLAN_NS = "http://schemas.microsoft.com/sqlserver/2004/07/showplan"

# RelOp children that are common to every operator. The first child outside
# this set is the operator-specific element (IndexScan, Hash, NestedLoops, ...).
NON_OPERATOR_ELEMENTS = frozenset({
    "OutputList",
    "RunTimeInformation",
    "Warnings",
    "MemoryFractions",
    "RunTimePartitionSummary",
    "InternalInfo",
})


def q(local_name: str) -> str:
    """Namespace-qualified tag name in ElementTree's {ns}name form."""
    return f"{{{SHOWPLAN_NS}}}{local_name}"


RELOP = q("RelOp")


def local_name(element: ET.Element) -> str:
    tag = element.tag
    if isinstance(tag, str) and tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag if isinstance(tag, str) else ""


def parse_float(value: Optional[str]) -> float:
    if not value:
        return 0.0
    try:
        result = float(value)
    except ValueError:
        return 0.0
    return result if math.isfinite(result) else 0.0


def parse_int(value: Optional[str]) -> int:
    """Integer attribute; fractional text is truncated toward zero."""
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        try:
            return int(float(value))
        except (ValueError, OverflowError):
            return 0


def parse_bool(value: Optional[str]) -> bool:
    return value in ("true", "1")


def strip_brackets(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.replace("[", "").replace("]", "")


def operator_element(relop: ET.Element) -> Optional[ET.Element]:
    """Return the operator-specific child of a RelOp, or None."""
    for child in relop:
        if local_name(child) not in NON_OPERATOR_ELEMENTS:
            return child
    return None


def child_relops(relop: ET.Element) -> Iterator[ET.Element]:
    """
    Yield the RelOps that are direct children of this operator.

    They sit either directly inside the operator element, or one level deeper
    inside a non-RelOp child of it. Nothing below a RelOp is visited.
    """
    op_el = operator_element(relop)
    if op_el is None:
        return

    for child in op_el.findall(RELOP):
        yield child

    for child in op_el:
        if child.tag == RELOP:
            continue
        for nested in child.findall(RELOP):
            yield nested


def scoped_descendants(element: ET.Element, tag: str) -> Iterator[ET.Element]:
    """
    Like element.iter(tag) but never crosses into a nested RelOp, so a child
    operator's Object or SeekPredicate is not attributed to its parent.
    """
    for child in element:
        if child.tag == RELOP:
            continue
        if child.tag == tag:
            yield child
        yield from scoped_descendants(child, tag)


def first_scalar_string(element: Optional[ET.Element]) -> Optional[str]:
    """ScalarString of the first ScalarOperator under element."""
    if element is None:
        return None
    scalar = element.find(f".//{q('ScalarOperator')}")
    if scalar is None:
        return None
    return scalar.get("ScalarString")


def format_column_ref(col_ref: ET.Element) -> str:
    column = col_ref.get("Column", "")
    table = col_ref.get("Table", "")
    text = f"{table}.{column}" if table else column
    return strip_brackets(text)


def column_refs(parent: Optional[ET.Element]) -> List[str]:
    if parent is None:
        return []
    refs = (format_column_ref(c) for c in parent.findall(q("ColumnReference")))
    return [r for r in refs if r]


def column_list(parent: ET.Element, element_name: str) -> Optional[str]:
    """Comma-joined ColumnReference list of a named child, or None when empty."""
    text = ", ".join(column_refs(parent.find(q(element_name))))
    return text or None
