"""Abandoned-cart heartbeat tracking and scanning.

The storefront posts a heartbeat whenever a customer's cart changes. Carts
that stay idle past the threshold are reported once to the contact directory
and the event sink, and (optionally) start the ABANDONED_CART_1 automation.

Usage:
    from mailflow.cart.abandoned import AbandonedCartTracker

    tracker = AbandonedCartTracker(config.abandoned_cart, contacts, events, engine=engine)
    tracker.heartbeat("a@x.com", [{"id": "sku-1", "name": "Vase", "price": 40, "qty": 1}])
    result = await tracker.scan(clock())
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from mailflow.automation.models import CustomerSnapshot
from mailflow.core.clock import Clock, system_clock
from mailflow.core.logging import get_logger, mask_email
from mailflow.marketing.contacts import NullContactDirectory, NullEventSink

if TYPE_CHECKING:
    from mailflow.automation.engine import AutomationEngine
    from mailflow.config_schema import AbandonedCartConfig
    from mailflow.marketing.contacts import ContactDirectory, EventSink

logger = get_logger(__name__)

# Entries idle longer than this are dropped whether or not they were reported
STALE_AFTER = timedelta(hours=24)

CART_ABANDONED_EVENT = "cart_abandoned"


@dataclass(frozen=True, slots=True)
class CartItem:
    id: str
    name: str | None = None
    price: float | None = None
    qty: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CartItem:
        price = data.get("price")
        qty = data.get("qty", data.get("quantity"))
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name"),
            price=float(price) if price is not None else None,
            qty=int(qty) if qty is not None else 1,
        )


@dataclass
class AbandonedCartEntry:
    email: str
    items: list[CartItem]
    cart_total: float
    last_updated_at: datetime
    notified: bool = False

    @property
    def items_count(self) -> int:
        return sum(item.qty for item in self.items)

    def items_as_dicts(self) -> list[dict[str, Any]]:
        return [{k: v for k, v in asdict(item).items() if v is not None} for item in self.items]


@dataclass
class CartScanResult:
    notified: int = 0
    failed: int = 0
    removed: int = 0
    emails: list[str] = field(default_factory=list)


class AbandonedCartTracker:
    """In-memory cart registry with a periodic abandonment scan."""

    def __init__(
        self,
        config: AbandonedCartConfig,
        contacts: ContactDirectory | None = None,
        events: EventSink | None = None,
        engine: AutomationEngine | None = None,
        clock: Clock | None = None,
        source: str = "storefront",
    ):
        self._config = config
        self._contacts = contacts or NullContactDirectory()
        self._events = events or NullEventSink()
        self._engine = engine
        self._clock = clock or system_clock()
        self._source = source
        self._entries: dict[str, AbandonedCartEntry] = {}

    @property
    def idle_threshold(self) -> timedelta:
        return timedelta(minutes=self._config.idle_minutes)

    @property
    def entries(self) -> dict[str, AbandonedCartEntry]:
        return dict(self._entries)

    def heartbeat(
        self,
        email: str,
        items: list[dict[str, Any]] | list[CartItem],
        cart_total: float | None = None,
    ) -> AbandonedCartEntry | None:
        """Record the current contents of a customer's cart.

        A previous notification is kept only while the cart total is unchanged.

        Returns:
            The stored entry, or None when the email is blank
        """
        email = (email or "").strip()
        if not email:
            return None

        cart_items = [i if isinstance(i, CartItem) else CartItem.from_dict(i) for i in items or []]
        if cart_total is None:
            cart_total = sum((i.price or 0) * i.qty for i in cart_items)

        previous = self._entries.get(email)
        entry = AbandonedCartEntry(
            email=email,
            items=cart_items,
            cart_total=cart_total,
            last_updated_at=self._clock(),
            notified=bool(previous and previous.notified and previous.cart_total == cart_total),
        )
        self._entries[email] = entry
        logger.debug(
            "cart_heartbeat",
            email=mask_email(email),
            items=len(cart_items),
            cart_total=cart_total,
        )
        return entry

    async def scan(self, now: datetime | None = None) -> CartScanResult:
        """Report idle carts and drop stale ones.

        A failed report leaves the entry un-notified so the next scan retries it.
        """
        now = now or self._clock()
        result = CartScanResult()

        for email, entry in list(self._entries.items()):
            idle = now - entry.last_updated_at

            if idle >= self.idle_threshold and not entry.notified and entry.items:
                try:
                    await self._notify(entry)
                except Exception as e:
                    result.failed += 1
                    logger.warning(
                        "cart_abandoned_notify_failed",
                        email=mask_email(email),
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                else:
                    entry.notified = True
                    result.notified += 1
                    result.emails.append(email)
                    logger.info(
                        "cart_abandoned_notified",
                        email=mask_email(email),
                        cart_total=entry.cart_total,
                    )
                    await self._trigger_automation(entry)

            if idle > STALE_AFTER and self._entries.get(email) is entry:
                del self._entries[email]
                result.removed += 1

        if result.notified or result.failed or result.removed:
            logger.info(
                "cart_scan_complete",
                notified=result.notified,
                failed=result.failed,
                removed=result.removed,
                tracked=len(self._entries),
            )
        return result

    async def _notify(self, entry: AbandonedCartEntry) -> None:
        attributes = {
            "CART_VALUE": entry.cart_total,
            "CART_ITEMS_COUNT": entry.items_count,
            "LAST_CART_ITEM": entry.items[0].name if entry.items else None,
        }
        list_ids = [self._config.list_id] if self._config.list_id is not None else None
        await self._contacts.upsert_contact(entry.email, attributes, list_ids)
        await self._events.track(
            CART_ABANDONED_EVENT,
            entry.email,
            {"items": entry.items_as_dicts(), "cartTotal": entry.cart_total, "source": self._source},
        )

    async def _trigger_automation(self, entry: AbandonedCartEntry) -> None:
        if self._engine is None or not self._config.trigger_automation:
            return
        try:
            await self._engine.trigger_abandoned_cart_email(
                CustomerSnapshot(email=entry.email, total_spent=entry.cart_total),
                entry.items_as_dicts(),
                stage=1,
            )
        except Exception as e:
            logger.warning(
                "cart_automation_trigger_failed",
                email=mask_email(entry.email),
                error=str(e),
            )
