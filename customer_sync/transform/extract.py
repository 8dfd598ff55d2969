"""Walk the located arrays and produce canonical customer, order and
product-line records."""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from customer_sync.transform.fields import (
    CUSTOMER_CODE_SOURCES,
    CUSTOMER_FIELDS,
    CUSTOMER_REFERENCE_SOURCES,
    EMBEDDED_ORDER_KEYS,
    EMBEDDED_PRODUCT_KEYS,
    ORDER_CODE_SOURCES,
    ORDER_FIELDS,
    ORDER_ITEM_KEYS,
    ORDER_REFERENCE_SOURCES,
    PRODUCT_CODE_SOURCES,
    PRODUCT_SKU_SOURCES,
    PRODUCT_LINE_FIELDS,
    identifier_spec,
    project_record,
)
from customer_sync.transform.locate import LocatedArrays
from customer_sync.transform.normalize import CANONICAL_TIMESTAMP_FORMAT

logger = logging.getLogger(__name__)

# Owner used when an order or product line cannot be tied to a customer
SENTINEL_CUSTOMER = "0"
# Order link used by product lines that belong to no order
SENTINEL_ORDER = "0"


@dataclass
class ExtractionResult:
    """Canonical records extracted from one document."""

    customers: list[dict] = field(default_factory=list)
    orders: list[dict] = field(default_factory=list)
    product_lines: list[dict] = field(default_factory=list)
    keyless: list[dict] = field(default_factory=list)  # customers without identity, not written
    skipped_product_lines: int = 0
    synthesized_order_codes: int = 0

    def counts(self) -> dict:
        return {
            "customers": len(self.customers),
            "orders": len(self.orders),
            "product_lines": len(self.product_lines),
            "keyless_customers": len(self.keyless),
            "skipped_product_lines": self.skipped_product_lines,
            "synthesized_order_codes": self.synthesized_order_codes,
        }


def _first_container(entry: dict, names: tuple[str, ...]) -> Any:
    for name in names:
        value = entry.get(name)
        if isinstance(value, (list, dict)) and value:
            return value
    return None


def _iter_product_entries(container: Any) -> Iterator[tuple[Optional[str], dict]]:
    """Yield (map_key, entry) from a product map or a product list."""
    if isinstance(container, dict):
        for map_key, value in container.items():
            if isinstance(value, dict):
                yield map_key, value
            else:
                # {"<product>": <quantity>} shorthand
                yield map_key, {"quantidade": value}
    elif isinstance(container, list):
        for value in container:
            if isinstance(value, dict):
                yield None, value


class RecordExtractor:
    """Turn a located document into canonical records.

    Ownership rules:
        - orders and product lines embedded in a customer belong to it
        - otherwise their own customer reference is used
        - otherwise the sentinel customer "0"
    """

    def __init__(
        self,
        strip_leading_zeros: bool = True,
        stamped_at: Optional[str] = None,
    ):
        """Initialize the extractor.

        Args:
            strip_leading_zeros: Identifier policy applied to every code
            stamped_at: Value for ``criado_em`` (defaults to now, UTC)
        """
        self.stamped_at = stamped_at or datetime.now(timezone.utc).strftime(
            CANONICAL_TIMESTAMP_FORMAT
        )

        zeros = strip_leading_zeros
        self.customer_code = identifier_spec("cliente_codigo", *CUSTOMER_CODE_SOURCES, strip_leading_zeros=zeros)
        self.customer_reference = identifier_spec("cliente_codigo", *CUSTOMER_REFERENCE_SOURCES, strip_leading_zeros=zeros)
        self.order_code = identifier_spec("codigo_pedido", *ORDER_CODE_SOURCES, strip_leading_zeros=zeros)
        self.order_reference = identifier_spec("id_pedido", *ORDER_REFERENCE_SOURCES, strip_leading_zeros=zeros)
        self.product_code = identifier_spec("produto_codigo", *PRODUCT_CODE_SOURCES, strip_leading_zeros=zeros)
        self.product_sku = identifier_spec("produto_codigo", *PRODUCT_SKU_SOURCES, strip_leading_zeros=zeros)

    def extract(self, located: LocatedArrays) -> ExtractionResult:
        result = ExtractionResult()

        for entry in located.customers:
            if isinstance(entry, dict):
                self._extract_customer(entry, result)

        for entry in located.orders:
            if isinstance(entry, dict):
                self._extract_order(entry, result, owner=None)

        for map_key, entry in _iter_product_entries(located.product_lines):
            self._extract_product_line(entry, result, map_key=map_key)

        logger.info(
            "Extraction complete",
            extra=result.counts(),
        )
        return result

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def _extract_customer(self, entry: dict, result: ExtractionResult) -> None:
        code = self.customer_code.resolve(entry)
        record = {
            "cliente_codigo": code,
            **project_record(entry, CUSTOMER_FIELDS),
            "criado_em": self.stamped_at,
        }

        if code is None:
            result.keyless.append(record)
            logger.warning(
                "Customer without identity; its orders and products fall back to their own references",
                extra={"customer_name": record.get("nome")},
            )
        else:
            result.customers.append(record)

        orders = _first_container(entry, EMBEDDED_ORDER_KEYS)
        if isinstance(orders, list):
            embedded_count = 0
            for order in orders:
                if isinstance(order, dict):
                    self._extract_order(order, result, owner=record)
                    embedded_count += 1
            if record["total_pedidos"] is None:
                record["total_pedidos"] = embedded_count

        products = _first_container(entry, EMBEDDED_PRODUCT_KEYS)
        for map_key, product in _iter_product_entries(products):
            self._extract_product_line(product, result, map_key=map_key, owner_code=code)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _synthesize_order_code(self, owner_code: str, order: dict) -> str:
        payload = json.dumps(order, sort_keys=True, default=str)
        digest = hashlib.sha1(payload.encode("utf-8")).hexdigest()[:10]
        return f"P_{owner_code}_{digest}"

    def _extract_order(
        self,
        order: dict,
        result: ExtractionResult,
        owner: Optional[dict],
    ) -> None:
        owner_code = owner.get("cliente_codigo") if owner else None
        owner_code = owner_code or self.customer_reference.resolve(order) or SENTINEL_CUSTOMER

        code = self.order_code.resolve(order)
        if code is None:
            code = self._synthesize_order_code(owner_code, order)
            result.synthesized_order_codes += 1

        record = {
            "codigo_pedido": code,
            "cliente_codigo": owner_code,
            **project_record(order, ORDER_FIELDS),
            "criado_em": self.stamped_at,
        }

        if owner:
            record["cidade"] = record["cidade"] or owner.get("cidade")
            record["estado"] = record["estado"] or owner.get("estado")

        result.orders.append(record)

        items = _first_container(order, ORDER_ITEM_KEYS)
        for map_key, item in _iter_product_entries(items):
            self._extract_product_line(
                item,
                result,
                map_key=map_key,
                owner_code=owner_code,
                order_code=code,
                order_date=record["data_hora_pedido"],
            )

    # ------------------------------------------------------------------
    # Product lines
    # ------------------------------------------------------------------

    def _extract_product_line(
        self,
        entry: dict,
        result: ExtractionResult,
        map_key: Optional[str] = None,
        owner_code: Optional[str] = None,
        order_code: Optional[str] = None,
        order_date: Optional[str] = None,
    ) -> None:
        product_code = self.product_code.resolve(entry)
        if product_code is None and map_key is not None:
            product_code = self.product_code.normalizer(map_key)
        if product_code is None:
            product_code = self.product_sku.resolve(entry)

        if product_code is None:
            result.skipped_product_lines += 1
            logger.debug("Skipping product line without product code", extra={"entry": entry})
            return

        owner_code = owner_code or self.customer_reference.resolve(entry) or SENTINEL_CUSTOMER
        order_code = self.order_reference.resolve(entry) or order_code or SENTINEL_ORDER

        record = {
            "cliente_codigo": owner_code,
            "produto_codigo": product_code,
            "id_pedido": order_code,
            **project_record(entry, PRODUCT_LINE_FIELDS),
            "criado_em": self.stamped_at,
        }
        record["data_pedido"] = record["data_pedido"] or order_date

        result.product_lines.append(record)
