"""Record builders and a deterministic mixed-source fixture."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from ledger_recon.models import RecordAttributes, TransactionRecord


def mk_record(
    rid: str,
    source: str,
    amount: str | None,
    day: str | date | None,
    **fields: Any,
) -> TransactionRecord:
    attributes = fields.pop("attributes", None) or {}
    return TransactionRecord(
        id=rid,
        source=source,
        amount=Decimal(amount) if amount is not None else None,
        date=date.fromisoformat(day) if isinstance(day, str) else day,
        attributes=RecordAttributes.model_validate(attributes),
        **fields,
    )


_CUSTOMERS = (
    "Clinica Dental Sonrisa",
    "Ortho Partners",
    "Maria Lopez Garcia",
    "Bright Smiles Studio",
    "Juan Perez",
    "Nordic Dental Lab",
    "Laura Martinez",
    "Dental Excellence Group",
    "Pedro Sanchez",
    "White Pearl Clinic",
)


def build_fixture() -> list[TransactionRecord]:
    """100 records: 30 invoices, 30 gateway payments, 40 bank rows.

    - Stripe payments match invoices by id (10), email+amount (10) and
      name+amount (10).
    - Bank: 10 deposits equal to a day's stripe total, 10 own-account
      transfers, 10 transfers naming an invoiced customer, 5 outflows
      (out of scope for deposits) and 5 unexplained inflows.
    """

    base = date(2024, 3, 1)
    records: list[TransactionRecord] = []

    invoices: list[TransactionRecord] = []
    for i in range(30):
        name = _CUSTOMERS[i % len(_CUSTOMERS)] + f" {i:02d}"
        inv = mk_record(
            f"inv-{i:03d}",
            "invoices",
            f"{100 + i * 7}.00",
            base + timedelta(days=i % 20),
            external_id=f"INV-{1000 + i}",
            customer_email=f"customer{i:02d}@example.com",
            customer_name=name,
            attributes={"classification": "sales" if i % 3 else "services"},
        )
        invoices.append(inv)
    records.extend(invoices)

    for i in range(30):
        inv = invoices[i]
        day = (inv.date or base) + timedelta(days=1)
        fields: dict[str, Any] = {}
        if i < 10:
            fields["external_id"] = inv.external_id
        elif i < 20:
            fields["customer_email"] = inv.customer_email
        else:
            fields["customer_name"] = inv.customer_name
        records.append(
            mk_record(
                f"str-{i:03d}",
                "stripe",
                str((inv.amount or Decimal(0)) - Decimal("0.50")),
                day,
                description=f"Charge {i}",
                attributes={"settlement_date": (day + timedelta(days=2)).isoformat()},
                **fields,
            )
        )

    for i in range(10):
        records.append(
            mk_record(
                f"bank-dep-{i:03d}",
                "bank",
                "1.00",
                base + timedelta(days=60 + i * 3),
                description=f"ABONO STRIPE PAYOUT {i}",
                attributes={"payment_source": "stripe"},
            )
        )
    for i in range(10):
        records.append(
            mk_record(
                f"bank-int-{i:03d}",
                "bank",
                f"{500 + i}.00",
                base + timedelta(days=i),
                description="TRASPASO ENTRE CUENTAS PROPIA CUENTA",
            )
        )
    for i in range(10):
        inv = invoices[i]
        records.append(
            mk_record(
                f"bank-trf-{i:03d}",
                "bank",
                str(inv.amount),
                (inv.date or base) + timedelta(days=4),
                description=f"TRANSF/{(inv.customer_name or '').upper()}",
            )
        )
    for i in range(5):
        records.append(
            mk_record(
                f"bank-out-{i:03d}",
                "bank",
                f"-{40 + i}.00",
                base + timedelta(days=i),
                description="CARD PURCHASE",
            )
        )
    for i in range(5):
        records.append(
            mk_record(
                f"bank-misc-{i:03d}",
                "bank",
                f"{9000 + i * 13}.37",
                base + timedelta(days=100 + i),
                description="INGRESO VARIOS",
            )
        )
    assert len(records) == 100
    return records
