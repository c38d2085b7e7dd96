"""Service file price calculation.

Line item total = unit price x qty, minus the item discount percentage,
minus a 10% urgency discount when both the item and its service file are
urgent. A tray totals its items; the file totals its trays and applies the
global discount percentage. Amounts are Decimal, rounded to cents at the end.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

URGENT_DISCOUNT_PCT = Decimal("10")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class ItemTotal:
    item_id: Optional[int]
    name: str
    unit_price: Decimal
    qty: int
    subtotal: Decimal
    discount_pct: Decimal
    item_discount: Decimal
    urgent_discount: Decimal
    total: Decimal
    is_urgent: bool


@dataclass
class TrayTotal:
    tray_id: Optional[int]
    tray_number: str
    items: List[ItemTotal] = field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    item_discounts: Decimal = Decimal("0")
    urgent_discounts: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


@dataclass
class FileTotal:
    service_file_id: Optional[int]
    trays: List[TrayTotal]
    trays_total: Decimal
    global_discount_pct: Decimal
    global_discount: Decimal
    final_total: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_file_id": self.service_file_id,
            "trays_total": str(money(self.trays_total)),
            "global_discount_pct": str(self.global_discount_pct),
            "global_discount": str(money(self.global_discount)),
            "final_total": str(self.final_total),
            "trays": [
                {
                    "tray_id": tray.tray_id,
                    "tray_number": tray.tray_number,
                    "subtotal": str(money(tray.subtotal)),
                    "item_discounts": str(money(tray.item_discounts)),
                    "urgent_discounts": str(money(tray.urgent_discounts)),
                    "total": str(money(tray.total)),
                }
                for tray in self.trays
            ],
        }


class PriceCalculator:
    """Pricing rules for invoicing. Replaceable per deployment."""

    urgent_discount_pct = URGENT_DISCOUNT_PCT

    def item_total(self, item: Any, file_urgent: bool = False) -> ItemTotal:
        """Total of one line item (a TrayItem or any object with the same fields)."""
        unit_price = to_decimal(item.unit_price)
        qty = item.qty if item.qty is not None else 1
        discount_pct = to_decimal(item.discount_pct)
        subtotal = unit_price * qty
        item_discount = subtotal * discount_pct / HUNDRED
        after_discount = subtotal - item_discount
        is_urgent = bool(item.urgent)
        urgent_discount = Decimal("0")
        if is_urgent and file_urgent:
            urgent_discount = after_discount * self.urgent_discount_pct / HUNDRED
        return ItemTotal(
            item_id=getattr(item, "id", None),
            name=item.name,
            unit_price=unit_price,
            qty=qty,
            subtotal=subtotal,
            discount_pct=discount_pct,
            item_discount=item_discount,
            urgent_discount=urgent_discount,
            total=after_discount - urgent_discount,
            is_urgent=is_urgent,
        )

    def tray_total(self, tray: Any, items: Iterable[Any],
                   file_urgent: bool = False) -> TrayTotal:
        result = TrayTotal(tray_id=getattr(tray, "id", None), tray_number=tray.number)
        for item in items:
            calc = self.item_total(item, file_urgent)
            result.items.append(calc)
            result.subtotal += calc.subtotal
            result.item_discounts += calc.item_discount
            result.urgent_discounts += calc.urgent_discount
        result.total = result.subtotal - result.item_discounts - result.urgent_discounts
        return result

    def file_total(self, service_file: Any, trays: Iterable[Any],
                   items_by_tray: Dict[int, List[Any]],
                   global_discount_pct: Any = None) -> FileTotal:
        """Total of a service file.

        Args:
            service_file: the file (``id``, ``urgent``, ``global_discount_pct``).
            trays: its trays.
            items_by_tray: tray id -> line items.
            global_discount_pct: overrides the file's stored percentage.
        """
        file_urgent = bool(service_file.urgent)
        tray_totals = [
            self.tray_total(tray, items_by_tray.get(tray.id, []), file_urgent)
            for tray in trays
        ]
        trays_total = sum((t.total for t in tray_totals), Decimal("0"))
        pct = to_decimal(
            global_discount_pct if global_discount_pct is not None
            else service_file.global_discount_pct
        )
        global_discount = trays_total * pct / HUNDRED
        return FileTotal(
            service_file_id=getattr(service_file, "id", None),
            trays=tray_totals,
            trays_total=trays_total,
            global_discount_pct=pct,
            global_discount=global_discount,
            final_total=money(trays_total - global_discount),
        )
