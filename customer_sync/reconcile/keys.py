"""Composite identity for product-line rows."""

from typing import NamedTuple, Optional

from customer_sync.transform.normalize import normalize_identifier

SENTINEL_ORDER = "0"


class ProductLineKey(NamedTuple):
    """Identity of a product line: customer x product x order.

    Compared field by field, so a code containing "|" or any other
    separator can never collide with a different key.
    """

    cliente_codigo: str
    produto_codigo: str
    id_pedido: str = SENTINEL_ORDER

    @classmethod
    def from_row(
        cls,
        row: dict,
        strip_leading_zeros: bool = True,
    ) -> Optional["ProductLineKey"]:
        """Build the key of an incoming or persisted row.

        Returns None when the row has no product code.
        """
        product = normalize_identifier(row.get("produto_codigo"), strip_leading_zeros)
        if product is None:
            return None

        customer = normalize_identifier(row.get("cliente_codigo"), strip_leading_zeros) or "0"
        order = normalize_identifier(row.get("id_pedido"), strip_leading_zeros) or SENTINEL_ORDER
        return cls(customer, product, order)

    def as_filters(self) -> dict:
        """Equality filters locating this exact row in the store."""
        return self._asdict()

    def __str__(self) -> str:
        return "/".join(self)
