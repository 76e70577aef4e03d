"""Canonical invoice fields and the tier that supplies each of them.

- Deterministic: typed fields of the prebuilt invoice model, addressed by a
  path into the layout `fields` payload
- Targeted lookup: fields the invoice model does not return, asked for as
  query fields (the service caps a request at 20 keys)
- Inference fallback: aggregates and per-item references that need
  reasoning across the document
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from docsplit.models import ExtractionTier, FieldKind

ITEMS_PATH = "Items.valueArray[]"
ITEM_OBJECT = "valueObject"

REQUIRED_FIELDS: tuple[str, ...] = ("invoice_id", "issue_date", "total_ttc")

# Alternate keys emitted by tiers -> canonical key
FIELD_ALIASES: dict[str, str] = {
    "invoice_number": "invoice_id",
    "invoice_date": "issue_date",
    "total_amount": "total_ttc",
    "vendor_name": "exporter_name",
    "vendor_address": "exporter_street",
    "customer_name": "importer_name",
    "customer_address": "importer_street",
    "line_items": "items",
}

HIGH_PRIORITY_FIELDS = frozenset(
    {"invoice_id", "issue_date", "exporter_name", "importer_name", "total_ttc", "currency"}
)


@dataclass(frozen=True)
class FieldSpec:
    """Where a canonical field comes from and how to normalize it.

    Exactly one of `path`, `query` or `instruction` is set, matching `tier`.
    Item-level specs name the LineItem attribute they fill in `item_attr`.
    """

    name: str
    tier: ExtractionTier
    kind: FieldKind = FieldKind.TEXT
    path: Optional[str] = None
    query: Optional[str] = None
    instruction: Optional[str] = None
    item_attr: Optional[str] = None

    @property
    def item_level(self) -> bool:
        return self.item_attr is not None

    @property
    def priority(self) -> str:
        return "high" if self.name in HIGH_PRIORITY_FIELDS else "normal"


def by_priority(names: Sequence[str]) -> list[str]:
    """High-priority fields first, otherwise in the given order."""
    return sorted(names, key=lambda name: name not in HIGH_PRIORITY_FIELDS)


def _det(name: str, path: str, kind: FieldKind = FieldKind.TEXT) -> FieldSpec:
    return FieldSpec(name, ExtractionTier.DETERMINISTIC, kind, path=path)


def _query(
    name: str, key: str, instruction: str, kind: FieldKind = FieldKind.TEXT, item_attr=None
) -> FieldSpec:
    return FieldSpec(
        name,
        ExtractionTier.TARGETED_LOOKUP,
        kind,
        query=key,
        instruction=instruction,
        item_attr=item_attr,
    )


def _infer(
    name: str, instruction: str, kind: FieldKind = FieldKind.TEXT, item_attr=None
) -> FieldSpec:
    return FieldSpec(
        name,
        ExtractionTier.INFERENCE_FALLBACK,
        kind,
        instruction=instruction,
        item_attr=item_attr,
    )


HEADER_FIELDS: tuple[FieldSpec, ...] = (
    # Invoice identity
    _det("invoice_id", "InvoiceId"),
    _det("issue_date", "InvoiceDate", FieldKind.DATE),
    _det("due_date", "DueDate", FieldKind.DATE),
    _det("po_number", "PurchaseOrder"),
    _det("payment_terms", "PaymentTerm"),
    # Parties
    _det("exporter_name", "VendorName"),
    _det("exporter_address", "VendorAddress"),
    _det("importer_name", "CustomerName"),
    _det("importer_address", "CustomerAddress"),
    # Totals
    _det("total_ht", "SubTotal.valueCurrency.amount", FieldKind.NUMBER),
    _det("total_ttc", "InvoiceTotal.valueCurrency.amount", FieldKind.NUMBER),
    _det("currency", "InvoiceTotal.valueCurrency.currencyCode", FieldKind.CURRENCY),
    _det("tax_amount", "TotalTax.valueCurrency.amount", FieldKind.NUMBER),
    _det("tax_rate", "TaxDetails.valueArray[0].valueObject.Rate"),
    _det("amount_due", "AmountDue.valueCurrency.amount", FieldKind.NUMBER),
    # Address components
    _query(
        "exporter_street",
        "ExporterStreet",
        "Street address of the seller/vendor/exporter, with street number and name",
    ),
    _query("exporter_city", "ExporterCity", "City of the seller/vendor/exporter"),
    _query(
        "exporter_country",
        "ExporterCountry",
        "Country of the seller/vendor/exporter",
        FieldKind.COUNTRY,
    ),
    _query("exporter_email", "ExporterEmail", "Email address of the seller/vendor/exporter"),
    _query(
        "importer_street",
        "ImporterStreet",
        "Street address of the buyer/customer/importer, with street number and name",
    ),
    _query("importer_city", "ImporterCity", "City of the buyer/customer/importer"),
    _query(
        "importer_country",
        "ImporterCountry",
        "Country of the buyer/customer/importer",
        FieldKind.COUNTRY,
    ),
    _query("importer_email", "ImporterEmail", "Email address of the buyer/customer/importer"),
    # Payment and shipping
    _query(
        "payment_method",
        "PaymentMethod",
        'Payment method, e.g. "virement", "bank transfer", "card", "cash", "check"',
    ),
    _query(
        "package_number",
        "PackageNumber",
        "Package number, tracking number, shipping reference or parcel id",
    ),
    _query(
        "discount",
        "Discount",
        'Discount amount applied ("discount", "rebate", "reduction", "remise")',
        FieldKind.NUMBER,
    ),
    # Compliance
    _query("vat_exemption", "VatExemption", "VAT exemption statement or tax-free declaration"),
    _query(
        "late_payment_penalty",
        "LatePaymentPenalty",
        "Late payment penalty or interest rate for delayed payment",
    ),
    _query(
        "diamond_statement",
        "DiamondStatement",
        "Diamond statement, Kimberley process certificate or precious stones declaration",
    ),
    _query(
        "additional_fees_ht",
        "AdditionalFees",
        "Additional fees, charges or surcharges excluding tax",
        FieldKind.NUMBER,
    ),
    _query(
        "collection_fee_eur",
        "CollectionFee",
        "Collection fee in EUR or any currency collection charge",
        FieldKind.NUMBER,
    ),
    # Aggregates
    _infer("total_quantity", "Sum of the quantities of all line items", FieldKind.NUMBER),
    _infer("total_net_weight", "Sum of the net weights of all line items", FieldKind.NUMBER),
    _infer("total_gross_weight", "Sum of the gross weights of all line items", FieldKind.NUMBER),
    _infer("total_gold_weight", "Total gold weight across line items", FieldKind.NUMBER),
    _infer("total_platine_weight", "Total platinum weight across line items", FieldKind.NUMBER),
    _infer("dispatch_country", "Country the goods are dispatched from", FieldKind.COUNTRY),
    _infer("final_destination", "Country of final destination of the goods", FieldKind.COUNTRY),
)

# Deterministic item attributes, relative to Items.valueArray[].valueObject
ITEM_PATHS: dict[str, str] = {
    "description": "Description",
    "product_code": "ProductCode",
    "quantity": "Quantity.valueNumber",
    "unit": "Unit",
    "unit_price": "UnitPrice.valueCurrency.amount",
    "total_amount": "Amount.valueCurrency.amount",
    "currency": "Amount.valueCurrency.currencyCode",
}

ITEM_FIELDS: tuple[FieldSpec, ...] = (
    _query(
        "items.hs_code",
        "ItemHsCodes",
        'HS codes or customs tariff numbers of the items, e.g. "8207.9000"',
        item_attr="hs_code",
    ),
    _query(
        "items.made_in",
        "ItemOrigins",
        'Country of origin of the items ("Made in", "Origin")',
        FieldKind.COUNTRY,
        item_attr="origin_country",
    ),
    _query(
        "items.unit_weight",
        "ItemUnitWeights",
        'Unit weight of each item, e.g. "24.06 GR"',
        FieldKind.NUMBER,
        item_attr="net_weight",
    ),
    _query(
        "items.client_order",
        "ItemClientOrders",
        'Client order number of each item ("Client order", "Ref client", "Commande client", "N/REF")',
        item_attr="client_order",
    ),
    _query(
        "items.size",
        "ItemSizes",
        'Size of each item ("Size", "Taille", "Größe", e.g. "EU 40", "Ø 18 mm", "T52")',
        item_attr="size",
    ),
    _infer("items.po_number", "Purchase order number of each item", item_attr="po_number"),
    _infer("items.reference", "Product reference code of each item", item_attr="product_code"),
    _infer(
        "items.gross_weight",
        "Gross weight of each item",
        FieldKind.NUMBER,
        item_attr="gross_weight",
    ),
)

FIELD_SPECS: dict[str, FieldSpec] = {spec.name: spec for spec in HEADER_FIELDS + ITEM_FIELDS}


def fields_for_tier(tier: ExtractionTier, item_level: Optional[bool] = None) -> list[FieldSpec]:
    """Specs handled by one tier, optionally restricted to header or item fields."""
    return [
        spec
        for spec in FIELD_SPECS.values()
        if spec.tier == tier and (item_level is None or spec.item_level == item_level)
    ]


def query_batches(specs: list[FieldSpec], batch_size: int = 20) -> list[list[FieldSpec]]:
    """Split targeted-lookup specs into request batches of at most batch_size."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [specs[i : i + batch_size] for i in range(0, len(specs), batch_size)]


def field_kind(name: str) -> FieldKind:
    """Kind of a header field; unknown names are text."""
    spec = FIELD_SPECS.get(name)
    return spec.kind if spec else FieldKind.TEXT


def header_field_names() -> list[str]:
    return [spec.name for spec in HEADER_FIELDS]
