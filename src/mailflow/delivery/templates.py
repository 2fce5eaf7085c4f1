"""Template rendering interface and the built-in plain renderer.

Branded HTML templates live outside this package; anything implementing
``TemplateRenderer`` can be passed to the engine. ``PlainTextRenderer`` is the
default and produces a short, escaped message per automation type.
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any, Protocol

from mailflow.core.errors import TemplateRenderError


@dataclass(frozen=True, slots=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


class TemplateRenderer(Protocol):
    async def render(self, automation_type: str, metadata: dict[str, Any]) -> RenderedEmail: ...


SUBJECTS: dict[str, str] = {
    "WELCOME_SERIES": "Welcome, {name}!",
    "ABANDONED_CART_1": "You left something in your cart",
    "ABANDONED_CART_2": "Your cart is still waiting, {name}",
    "ORDER_CONFIRMATION": "Order {order_number} confirmed",
    "CARE_GUIDE": "How to care for your new pieces",
    "REVIEW_REQUEST": "How was order {order_number}?",
    "REENGAGEMENT_30": "We miss you, {name}",
    "REENGAGEMENT_90": "It's been a while, {name}",
}

INTROS: dict[str, str] = {
    "WELCOME_SERIES": "Thanks for joining us. Here is what's new this week.",
    "ABANDONED_CART_1": "Your cart is saved. Pick up where you left off:",
    "ABANDONED_CART_2": "The items below are still in your cart:",
    "ORDER_CONFIRMATION": "We received your order and are getting it ready.",
    "CARE_GUIDE": "A few tips to keep your order looking its best.",
    "REVIEW_REQUEST": "Tell us what you think of your order.",
    "REENGAGEMENT_30": "New arrivals are in. Come take a look.",
    "REENGAGEMENT_90": "A lot has changed since your last visit.",
}

GENERIC_SUBJECT = "{title}, {name}"
GENERIC_INTRO = "Here is an update from us."


def _title(automation_type: str) -> str:
    return automation_type.replace("_", " ").strip().capitalize() or "Hello"


class PlainTextRenderer:
    """Minimal renderer keyed by automation type."""

    def __init__(
        self,
        subjects: dict[str, str] | None = None,
        intros: dict[str, str] | None = None,
    ):
        self._subjects = subjects or SUBJECTS
        self._intros = intros or INTROS

    async def render(self, automation_type: str, metadata: dict[str, Any]) -> RenderedEmail:
        """Render subject, HTML and text bodies.

        Types without a configured subject (custom automations) get a generic
        subject built from the type name.

        Raises:
            TemplateRenderError: A subject placeholder that the metadata cannot fill
        """
        customer = metadata.get("customer") or {}
        data = metadata.get("data") or {}
        order = data.get("order") or {}
        name = customer.get("first_name") or "there"
        fields = {"name": name, "order_number": order.get("order_number", "")}

        try:
            subject = self._subjects.get(automation_type, GENERIC_SUBJECT).format(
                **fields, title=_title(automation_type)
            )
        except (KeyError, IndexError) as e:
            raise TemplateRenderError(
                f"Subject template for '{automation_type}' needs {e}",
                automation_type=automation_type,
            ) from e

        lines = [f"Hi {name},", "", self._intros.get(automation_type, GENERIC_INTRO)]
        for item in data.get("cart_items") or order.get("items") or []:
            label = item.get("name") or item.get("id") or "item"
            qty = item.get("qty", item.get("quantity", 1))
            lines.append(f"  - {label} x{qty}")
        text = "\n".join(lines).strip() + "\n"

        body = "".join(f"<p>{html.escape(line)}</p>" for line in lines if line)
        return RenderedEmail(subject=subject, html=f"<html><body>{body}</body></html>", text=text)
