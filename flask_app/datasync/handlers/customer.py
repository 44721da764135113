"""Customer accounts and their addresses."""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from sqlalchemy import func, select

from flask_app.models import Customer, CustomerAddress

from .base import (
    EntityHandler,
    clean_string,
    is_empty,
    optional_string,
    parse_bool,
    parse_date,
    parse_datetime,
    parse_int,
    parse_json_list,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ADDRESS_FIELDS = (
    "firstname",
    "lastname",
    "company",
    "street",
    "city",
    "region",
    "region_id",
    "postcode",
    "country_id",
    "telephone",
    "fax",
)
FLAT_PREFIXES = ("billing_", "shipping_") + tuple(f"address{index}_" for index in range(1, 11))
SAME_AS_BILLING_FLAGS = ("use_billing_as_shipping", "billing_is_shipping", "same_as_billing")


def _normalise_address(raw: Mapping[str, Any]) -> dict[str, Any] | None:
    address = {field: raw.get(field) for field in ADDRESS_FIELDS if not is_empty(raw.get(field))}
    street = raw.get("street")
    if isinstance(street, (list, tuple)):
        street = "\n".join(clean_string(line) for line in street if not is_empty(line))
        address["street"] = street or None
    if is_empty(address.get("street")) and is_empty(address.get("city")):
        return None
    address["region_id"] = parse_int(address.get("region_id"))
    address["is_default_billing"] = parse_bool(raw.get("is_default_billing", False))
    address["is_default_shipping"] = parse_bool(raw.get("is_default_shipping", False))
    return address


def extract_addresses(record: Mapping[str, Any]) -> list[dict[str, Any]]:
    """
    Collect addresses from a nested ``addresses`` list or flat prefixed columns.

    Flat columns use ``billing_``, ``shipping_`` and ``address1_`` to
    ``address10_`` prefixes. A flat prefix only yields an address when it
    carries a street or a city.
    """
    nested = record.get("addresses")
    if nested:
        rows = nested if isinstance(nested, list) else parse_json_list(nested)
        addresses = [address for address in (_normalise_address(row) for row in rows if isinstance(row, Mapping)) if address]
        if addresses:
            return addresses

    addresses: list[dict[str, Any]] = []
    same_as_billing = any(parse_bool(record.get(flag)) for flag in SAME_AS_BILLING_FLAGS if flag in record)
    for prefix in FLAT_PREFIXES:
        raw = {
            key[len(prefix):]: value for key, value in record.items() if isinstance(key, str) and key.startswith(prefix)
        }
        address = _normalise_address(raw)
        if address is None:
            continue
        if prefix == "billing_":
            address["is_default_billing"] = True
            if same_as_billing:
                address["is_default_shipping"] = True
        elif prefix == "shipping_":
            if same_as_billing:
                continue
            address["is_default_shipping"] = True
        addresses.append(address)
    return addresses


class CustomerHandler(EntityHandler):
    entity_type = "customer"
    label = "Customers"
    required_fields = ("email", "firstname", "lastname")
    external_ref_field = "email"

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        errors: list[str] = []
        email = clean_string(record.get("email"))
        if email and not EMAIL_PATTERN.match(email):
            errors.append(f"Invalid email address: {email}")
        return errors

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        email = clean_string(record.get("email")).lower()
        if not email:
            return None
        return self.session.scalar(
            select(Customer.id).where(
                Customer.website_id == self.website_id(record),
                func.lower(Customer.email) == email,
            )
        )

    def import_record(self, record: dict[str, Any], registry) -> int:
        customer, is_new = self.load_or_new(Customer, record)
        writer = self.writer(customer, record, is_new=is_new)

        writer.set("email", clean_string(record.get("email")).lower())
        writer.set("firstname", clean_string(record.get("firstname")))
        writer.set("lastname", clean_string(record.get("lastname")))
        for field in ("middlename", "prefix", "suffix", "taxvat"):
            writer.set_if_present(record, field, optional_string(record.get(field)))
        writer.set_if_present(record, "dob", parse_date(record.get("dob")))
        writer.set_if_present(record, "gender", parse_int(record.get("gender")))
        writer.set_if_present(record, "group_id", parse_int(record.get("group_id"), 1))

        if is_new:
            customer.website_id = self.website_id(record)
            customer.store_id = self.store_id(record)
            customer.force_password_reset = True
            customer.source_system = self.source_system(record)
            customer.source_id = self.source_id(record)
            created_at = parse_datetime(record.get("created_at"))
            if created_at is not None:
                customer.created_at = created_at

        self.session.flush()
        self._sync_addresses(customer, extract_addresses(record))
        self.session.flush()
        return customer.id

    def _sync_addresses(self, customer: Customer, addresses: list[dict[str, Any]]) -> None:
        for data in addresses:
            address = next(
                (existing for existing in customer.addresses if existing.matches(data.get("street"), data.get("postcode"))),
                None,
            )
            if address is None:
                address = CustomerAddress(customer=customer)
                self.session.add(address)
            for field in ADDRESS_FIELDS:
                if field in data:
                    setattr(address, field, data[field])
            self.session.flush()
            if data.get("is_default_billing"):
                customer.default_billing_id = address.id
            if data.get("is_default_shipping"):
                customer.default_shipping_id = address.id

        if customer.addresses:
            if customer.default_billing_id is None:
                customer.default_billing_id = customer.addresses[0].id
            if customer.default_shipping_id is None:
                customer.default_shipping_id = customer.default_billing_id
        logger.debug(
            "Synced customer addresses",
            extra={"datasync_customer_id": customer.id, "datasync_addresses": len(addresses)},
        )
