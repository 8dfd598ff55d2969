"""Declarative field-synonym tables.

Each canonical column maps to an ordered tuple of accessors plus an optional
normalizer. Accessors are evaluated in order and the first one producing a
non-empty value wins.
"""

from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional

from customer_sync.transform.normalize import (
    normalize_identifier,
    normalize_integer,
    normalize_number,
    normalize_text,
    normalize_timestamp,
)

Accessor = Callable[[dict], Any]


def key(name: str) -> Accessor:
    """Accessor reading a top-level property."""
    def accessor(entry: dict) -> Any:
        return entry.get(name)

    accessor.__name__ = f"key[{name}]"
    return accessor


def path(*names: str) -> Accessor:
    """Accessor reading a nested property, e.g. path("endereco", "cidade")."""
    def accessor(entry: dict) -> Any:
        current: Any = entry
        for name in names:
            if not isinstance(current, dict):
                return None
            current = current.get(name)
        return current

    accessor.__name__ = f"path[{'.'.join(names)}]"
    return accessor


def keys(*names: str) -> tuple[Accessor, ...]:
    return tuple(key(name) for name in names)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@dataclass(frozen=True)
class FieldSpec:
    """How to resolve one canonical column from a source entry."""

    name: str
    accessors: tuple[Accessor, ...]
    normalizer: Optional[Callable[[Any], Any]] = normalize_text

    def resolve(self, entry: dict) -> Any:
        for accessor in self.accessors:
            raw = accessor(entry)
            if _is_empty(raw):
                continue
            value = self.normalizer(raw) if self.normalizer else raw
            if value is not None:
                return value
        return None


def resolve_field(entry: dict, accessors: tuple[Accessor, ...], normalizer=None) -> Any:
    """Resolve a value without declaring a FieldSpec."""
    return FieldSpec("_", accessors, normalizer).resolve(entry)


def project_record(entry: dict, specs: tuple[FieldSpec, ...]) -> dict:
    """Project a source entry onto a canonical column set.

    Unknown source properties are dropped; every canonical column is present
    in the result (None when unresolved).
    """
    return {spec.name: spec.resolve(entry) for spec in specs}


def identifier_spec(name: str, *sources: str, strip_leading_zeros: bool = True) -> FieldSpec:
    """FieldSpec for an identifier column."""
    return FieldSpec(
        name,
        keys(*sources),
        partial(normalize_identifier, strip_leading_zeros=strip_leading_zeros),
    )


# Identity synonyms
CUSTOMER_CODE_SOURCES = ("codigo", "cliente_codigo", "codigo_cliente", "customer_code", "id")
CUSTOMER_REFERENCE_SOURCES = ("cliente_codigo", "codigo_cliente", "customer_code", "customer_id", "id_cliente")
ORDER_CODE_SOURCES = ("codigo_pedido", "id", "numero_pedido", "order_id")
ORDER_REFERENCE_SOURCES = ("id_pedido", "codigo_pedido", "numero_pedido", "order_id")
PRODUCT_CODE_SOURCES = ("codigo", "produto_codigo", "codigo_produto", "product_code")
# Consulted only after the map key; a variant SKU never replaces the product code
PRODUCT_SKU_SOURCES = ("sku",)

# Embedded arrays / maps
EMBEDDED_ORDER_KEYS = ("pedidos", "orders")
EMBEDDED_PRODUCT_KEYS = ("produtos_comprados", "produtos")
ORDER_ITEM_KEYS = ("produtos", "itens", "items")


CUSTOMER_FIELDS = (
    FieldSpec("nome", keys("nome", "name", "razao_social")),
    FieldSpec("email", keys("email", "e_mail")),
    FieldSpec("data_cadastro", keys("data_cadastro", "created_at", "data_criacao"), normalize_timestamp),
    FieldSpec("whatsapp", keys("whatsapp", "celular", "telefone")),
    FieldSpec("cidade", keys("cidade") + (path("endereco", "cidade"),)),
    FieldSpec("estado", keys("estado", "uf") + (path("endereco", "estado"),)),
    FieldSpec("loja_drop", keys("loja_drop")),
    FieldSpec("representante", keys("representante")),
    FieldSpec("total_pedidos", keys("total_pedidos"), normalize_integer),
    FieldSpec("valor_total_comprado", keys("valor_total_comprado"), normalize_number),
)

ORDER_FIELDS = (
    FieldSpec("situacao_pedido", keys("situacao_pedido", "status")),
    FieldSpec("data_hora_pedido", keys("data_hora_pedido", "data_pedido", "created_at"), normalize_timestamp),
    FieldSpec("data_hora_pagamento", keys("data_hora_pagamento", "data_pagamento"), normalize_timestamp),
    FieldSpec("data_hora_confirmacao", keys("data_hora_confirmacao", "data_confirmacao"), normalize_timestamp),
    FieldSpec("valor_total_produtos", keys("valor_total_produtos"), normalize_number),
    FieldSpec("valor_frete", keys("valor_frete", "frete"), normalize_number),
    FieldSpec("desconto", keys("desconto", "valor_desconto"), normalize_number),
    FieldSpec("valor_total_pedido", keys("valor_total_pedido", "valor_total", "total"), normalize_number),
    FieldSpec("percentual_comissao", keys("percentual_comissao"), normalize_number),
    FieldSpec("origem_pedido", keys("origem_pedido")),
    FieldSpec("tipo_compra", keys("tipo_compra")),
    FieldSpec("texto_tipo_compra", keys("texto_tipo_compra")),
    FieldSpec("cidade", keys("cidade")),
    FieldSpec("estado", keys("estado", "uf")),
)

PRODUCT_LINE_FIELDS = (
    FieldSpec("titulo", keys("titulo", "produto", "nome_produto", "title")),
    FieldSpec("categoria_principal", keys("categoria_principal")),
    FieldSpec("categoria", keys("categoria", "subcategoria")),
    FieldSpec("marca", keys("marca")),
    FieldSpec("tamanho", keys("tamanho")),
    FieldSpec("cor", keys("cor")),
    FieldSpec("sku", keys("sku")),
    FieldSpec("valor_unitario", keys("valor_unitario"), normalize_number),
    FieldSpec("quantidade", keys("quantidade", "qtd", "quantity"), normalize_integer),
    FieldSpec("data_pedido", keys("data_pedido", "data_hora_pedido"), normalize_timestamp),
)
