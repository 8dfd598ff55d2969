"""Locate the customer / order / product arrays inside a JSON document."""

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

logger = logging.getLogger(__name__)

CUSTOMER_ARRAY_NAMES = (
    "clientes",
    "lista_clientes",
    "lista_clientes_geral",
    "clientes_lista",
    "clientes_data",
    "customers",
    "users",
)

ORDER_ARRAY_NAMES = (
    "pedidos",
    "lista_pedidos",
    "orders",
    "lista_orders",
    "pedidos_lista",
)

PRODUCT_ARRAY_NAMES = (
    "produtos",
    "itens",
    "items",
    "lista_produtos",
    "order_items",
    "produtos_comprados",
)


@dataclass
class LocatedArrays:
    """Arrays found in a document."""

    customers: list = field(default_factory=list)
    orders: list = field(default_factory=list)
    product_lines: list = field(default_factory=list)
    customer_source: str = ""


def find_array(
    document: Any,
    candidates: Sequence[str],
    scan: bool = True,
) -> list:
    """Find an array in a loosely structured JSON root.

    Args:
        document: Parsed JSON root
        candidates: Property names to try, in priority order
        scan: When no candidate matches, fall back to the first
            list-valued top-level property

    Returns:
        The located list, the root itself when it is a list, or []
    """
    if isinstance(document, dict):
        for name in candidates:
            if isinstance(document.get(name), list):
                return document[name]

        if scan:
            for value in document.values():
                if isinstance(value, list):
                    return value

    if isinstance(document, list):
        return document

    return []


def _source_name(document: Any, candidates: Sequence[str]) -> str:
    if isinstance(document, list):
        return "<root>"
    if isinstance(document, dict):
        for name in candidates:
            if isinstance(document.get(name), list):
                return name
        for key, value in document.items():
            if isinstance(value, list):
                return key
    return ""


def locate_arrays(document: Any) -> LocatedArrays:
    """Locate the customer array plus any top-level order/product arrays.

    Top-level orders and products are only picked up by name; the scan
    fallback is reserved for the customer array so it never gets mistaken
    for an order list.
    """
    customers = find_array(document, CUSTOMER_ARRAY_NAMES)
    located = LocatedArrays(
        customers=customers,
        customer_source=_source_name(document, CUSTOMER_ARRAY_NAMES),
    )

    if isinstance(document, dict):
        orders = find_array(document, ORDER_ARRAY_NAMES, scan=False)
        if orders is not customers:
            located.orders = orders
        product_lines = find_array(document, PRODUCT_ARRAY_NAMES, scan=False)
        if product_lines is not customers:
            located.product_lines = product_lines

    logger.info(
        f"Located {len(located.customers)} customers, "
        f"{len(located.orders)} top-level orders, "
        f"{len(located.product_lines)} top-level product lines",
        extra={
            "customer_source": located.customer_source,
            "customer_count": len(located.customers),
            "order_count": len(located.orders),
            "product_line_count": len(located.product_lines),
        },
    )

    return located
