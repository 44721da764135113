"""Newsletter subscribers."""

from __future__ import annotations

import secrets
from typing import Any, Mapping

from sqlalchemy import func, select

from flask_app.models import Customer, NewsletterSubscriber, SubscriberStatus

from .base import EntityHandler, ForeignKey, clean_string, parse_int
from .customer import EMAIL_PATTERN


class NewsletterHandler(EntityHandler):
    entity_type = "newsletter"
    label = "Newsletter Subscribers"
    required_fields = ("subscriber_email",)
    foreign_key_fields = {"customer_id": ForeignKey("customer", required=False)}
    external_ref_field = "subscriber_email"

    @staticmethod
    def _email(record: Mapping[str, Any]) -> str:
        return clean_string(record.get("subscriber_email")).lower()

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        email = self._email(record)
        if email and not EMAIL_PATTERN.match(email):
            return [f"Invalid email address: {email}"]
        return []

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        email = self._email(record)
        if not email:
            return None
        return self.session.scalar(
            select(NewsletterSubscriber.id).where(func.lower(NewsletterSubscriber.email) == email)
        )

    def _customer_id(self, record: Mapping[str, Any]) -> int | None:
        customer_id = parse_int(record.get("customer_id"))
        if customer_id is not None:
            return customer_id
        if parse_int(record.get("_original_customer_id")) is None:
            return None
        # Unmapped account: fall back to the destination customer with the same email.
        return self.session.scalar(select(Customer.id).where(func.lower(Customer.email) == self._email(record)))

    def import_record(self, record: dict[str, Any], registry) -> int:
        subscriber, is_new = self.load_or_new(NewsletterSubscriber, record)
        writer = self.writer(subscriber, record, is_new=is_new)
        writer.set("email", self._email(record))
        writer.set("status", SubscriberStatus.from_source(record.get("subscriber_status", 1)))
        writer.set("store_id", self.store_id(record))
        customer_id = self._customer_id(record)
        if customer_id is not None:
            subscriber.customer_id = customer_id
        if is_new:
            subscriber.confirm_code = clean_string(record.get("subscriber_confirm_code")) or secrets.token_hex(16)
        self.session.flush()
        return subscriber.id
