"""Marketplace read model: listings, competitive analysis, trending, overview and portfolios.

Two cache layers back the browse view. ``marketplace:invoices:*`` holds the
page of LISTED invoices and only changes when an invoice moves;
``marketplace:listings:*`` holds the same page enriched with live offer
counts and best rates, and is dropped on every offer mutation. Anything
specific to the calling lender (``has_my_offer``, market position) is
computed per request from the store and never cached.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from factoring.core.auth import Actor
from factoring.core.cache import CacheBackend, best_effort
from factoring.core.exceptions import InvoiceNotAvailable, NotAuthorized, NotFound
from factoring.core.locks import read_through
from factoring.core.sorting import parse_sort
from factoring.models.invoice import Invoice, InvoiceStatus
from factoring.models.offer import Offer, OfferStatus
from factoring.models.shared import as_utc, utc_now
from factoring.models.user import UserRole
from factoring.repositories.invoice_repository import InvoiceRepository
from factoring.repositories.offer_repository import OfferRepository
from factoring.repositories.user_repository import UserRepository
from factoring.schemas.offer import OfferResponse
from factoring.services import invoice_rules, offer_rules
from factoring.services.invoice_cache import (
    MARKETPLACE_INVOICES_TTL,
    POPULAR_INVOICES_TTL,
    POPULAR_KEY,
    InvoiceCache,
    filters_digest,
    marketplace_invoices_key,
)
from factoring.services.invoice_query_service import can_view
from factoring.services.marketplace_cache import (
    COMPETITIVE_ANALYSIS_TTL,
    LISTINGS_TTL,
    OFFER_DETAIL_TTL,
    OFFER_LIST_TTL,
    OVERVIEW_KEY,
    OVERVIEW_TTL,
    MarketplaceCache,
    competitive_analysis_key,
    invoice_offers_key,
    lender_offers_key,
    listings_key,
    offer_detail_key,
)

logger = logging.getLogger(__name__)

TOP_OFFERS = 5
TOP_LENDERS = 5
TRENDING_IN_OVERVIEW = 5
OVERVIEW_WINDOW = timedelta(days=30)
SELLER_VISIBLE_STATUSES = [OfferStatus.PENDING, OfferStatus.ACCEPTED, OfferStatus.REJECTED]


@dataclass
class MarketplaceFilters:
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    min_days_until_due: int | None = None
    max_days_until_due: int | None = None
    anchor_id: str | None = None
    currency: str | None = None


@dataclass
class LenderOfferFilters:
    statuses: list[OfferStatus] | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


def serialize_offer(offer: Offer) -> dict[str, Any]:
    return OfferResponse.model_validate(offer).model_dump(mode="json")


def _range(values: list[float]) -> dict[str, float] | None:
    if not values:
        return None
    return {
        "min": round(min(values), 2),
        "max": round(max(values), 2),
        "average": round(statistics.fmean(values), 2),
    }


def _average_hours(pairs: list[tuple[datetime, datetime]]) -> float | None:
    spans = [
        (as_utc(end) - as_utc(start)).total_seconds() / 3600  # type: ignore[operator]
        for start, end in pairs
        if start is not None and end is not None
    ]
    return round(statistics.fmean(spans), 2) if spans else None


class MarketplaceQueryService:
    def __init__(self, db: Session, cache: CacheBackend):
        self.db = db
        self.cache = cache
        self.invoices = InvoiceRepository(db)
        self.offers = OfferRepository(db)
        self.users = UserRepository(db)
        self.invoice_cache = InvoiceCache(cache)
        self.marketplace_cache = MarketplaceCache(cache)

    # --- Listings ---

    def _listing(self, invoice: Invoice, anchor_names: dict[str, str], now: datetime) -> dict[str, Any]:
        return {
            "id": str(invoice.id),
            "anchor_id": str(invoice.anchor_id),
            "anchor_name": anchor_names.get(str(invoice.anchor_id)),
            "amount": invoice.amount,
            "currency": invoice.currency,
            "issue_date": as_utc(invoice.issue_date),  # type: ignore[arg-type]
            "due_date": as_utc(invoice.due_date),  # type: ignore[arg-type]
            "description": invoice.description,
            "listed_at": as_utc(invoice.listed_at),  # type: ignore[arg-type]
            "days_until_due": invoice_rules.days_until_due(invoice, now),
            "funding_terms": offer_rules.default_marketplace_terms(invoice, now),
        }

    def _listings_page(
        self, filters: MarketplaceFilters, page: int, limit: int, order_by: str | None
    ) -> dict[str, Any]:
        now = utc_now()
        due_from = (
            now + timedelta(days=filters.min_days_until_due)
            if filters.min_days_until_due is not None
            else None
        )
        due_to = (
            now + timedelta(days=filters.max_days_until_due)
            if filters.max_days_until_due is not None
            else None
        )
        items, total = self.invoices.get_listed(
            now=now,
            min_amount=filters.min_amount,
            max_amount=filters.max_amount,
            due_from=due_from,
            due_to=due_to,
            anchor_id=filters.anchor_id,
            currency=filters.currency,
            skip=(page - 1) * limit,
            limit=limit,
            order_by=order_by,
        )
        anchors = self.users.get_many({str(i.anchor_id) for i in items})
        names = {uid: u.display_name for uid, u in anchors.items()}
        return {
            "items": [self._listing(i, names, now) for i in items],
            "total": total,
            "page": page,
            "limit": limit,
        }

    async def browse_marketplace(
        self,
        lender_id: str,
        filters: MarketplaceFilters | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str | None = None,
        sort_order: str | None = None,
    ) -> dict[str, Any]:
        """LISTED, not yet overdue invoices with their live offer statistics."""
        filters = filters or MarketplaceFilters()
        order_by = parse_sort(sort_by, sort_order)
        digest = filters_digest({**asdict(filters), "page": page, "limit": limit, "order_by": order_by})

        async def load_enriched() -> dict[str, Any]:
            base = await read_through(
                self.cache,
                marketplace_invoices_key(digest),
                MARKETPLACE_INVOICES_TTL,
                lambda: self._listings_page(filters, page, limit, order_by),
            )
            ids = [item["id"] for item in base["items"]]
            stats = self.offers.live_stats_by_invoice(ids, utc_now())
            for item in base["items"]:
                count, best_rate = stats.get(item["id"], (0, None))
                item["offer_count"] = count
                item["best_rate"] = best_rate
            return base  # type: ignore[no-any-return]

        result = await read_through(self.cache, listings_key(digest), LISTINGS_TTL, load_enriched)
        mine = self.offers.invoices_with_live_offer_from(
            lender_id, [item["id"] for item in result["items"]], utc_now()
        )
        for item in result["items"]:
            item["has_my_offer"] = item["id"] in mine
        return result  # type: ignore[no-any-return]

    def _get_listed(self, invoice_id: str) -> Invoice:
        invoice = self.invoices.get_by_id(invoice_id)
        if invoice is None or invoice.status != InvoiceStatus.LISTED.value:
            raise InvoiceNotAvailable("Invoice is not available on the marketplace", invoice_id=invoice_id)
        return invoice

    async def get_marketplace_invoice_details(self, invoice_id: str, lender_id: str) -> dict[str, Any]:
        """One listing with its competitive analysis and the caller's own offer."""
        invoice = self._get_listed(invoice_id)
        now = utc_now()
        anchor = self.users.get_by_id(str(invoice.anchor_id))
        listing = self._listing(
            invoice, {str(invoice.anchor_id): anchor.display_name} if anchor else {}, now
        )
        live = self.offers.get_live_for_invoice(invoice_id, now)
        listing["offer_count"] = len(live)
        listing["best_rate"] = float(live[0].interest_rate) if live else None

        own = self.offers.get_lender_offer_for_invoice(invoice_id, lender_id)
        listing["has_my_offer"] = own is not None and offer_rules.is_active(own, now)
        analysis = await self.get_competitive_analysis(
            invoice_id, Actor(user_id=lender_id, role=UserRole.LENDER)
        )
        await best_effort(
            self.marketplace_cache.track_view(invoice_id, lender_id), "tracking a marketplace view"
        )
        return {
            "listing": listing,
            "analysis": analysis,
            "my_offer": serialize_offer(own) if own is not None else None,
        }

    # --- Competition ---

    def _analysis(self, invoice_id: str) -> dict[str, Any]:
        live = self.offers.get_live_for_invoice(invoice_id, utc_now())
        return {
            "invoice_id": invoice_id,
            "total_offers": len(live),
            "interest_rate": _range([float(o.interest_rate) for o in live]),
            "amount": _range([float(o.amount) for o in live]),
            "funding_percentage": _range([float(o.funding_percentage) for o in live]),
            "top_offers": [
                {
                    "rank": rank,
                    "offer_id": str(o.id),
                    "amount": float(o.amount),
                    "interest_rate": float(o.interest_rate),
                    "funding_percentage": float(o.funding_percentage),
                    "tenure": o.tenure,
                    "created_at": as_utc(o.created_at),  # type: ignore[arg-type]
                }
                for rank, o in enumerate(live[:TOP_OFFERS], start=1)
            ],
        }

    async def get_competitive_analysis(self, invoice_id: str, actor: Actor) -> dict[str, Any]:
        """Live offer statistics and the top offers; lenders also get their market position."""
        invoice = self.invoices.get_by_id(invoice_id)
        if invoice is None:
            raise NotFound("Invoice not found", invoice_id=invoice_id)
        if not can_view(invoice, actor):
            raise NotAuthorized("You do not have access to this invoice", invoice_id=invoice_id)

        analysis = await read_through(
            self.cache,
            competitive_analysis_key(invoice_id),
            COMPETITIVE_ANALYSIS_TTL,
            lambda: self._analysis(invoice_id),
        )
        analysis["market_position"] = None
        if actor.role == UserRole.LENDER:
            now = utc_now()
            own = self.offers.get_active_for_lender(invoice_id, actor.user_id, now)
            if own is not None:
                live = self.offers.get_live_for_invoice(invoice_id, now)
                analysis["market_position"] = offer_rules.market_position(own, live)
        return analysis  # type: ignore[no-any-return]

    # --- Trending and overview ---

    async def _trending(self, limit: int) -> list[dict[str, Any]]:
        ranked = await best_effort(self.marketplace_cache.trending(limit), "reading trending invoices")
        if not ranked:
            ranked = await best_effort(self.invoice_cache.trending(limit), "reading trending invoices")
        ranked = ranked or []
        invoices = self.invoices.get_many([invoice_id for invoice_id, _ in ranked])
        trending = []
        for invoice_id, views in ranked:
            invoice = invoices.get(invoice_id)
            if invoice is None:
                continue
            trending.append(
                {
                    "invoice_id": invoice_id,
                    "views": views,
                    "amount": invoice.amount,
                    "currency": invoice.currency,
                    "due_date": as_utc(invoice.due_date),  # type: ignore[arg-type]
                    "status": invoice.status,
                }
            )
        return trending

    async def get_trending_invoices(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most viewed invoices, cached as ``marketplace:popular``."""
        key = POPULAR_KEY if limit == 10 else f"{POPULAR_KEY}:{limit}"
        return await read_through(  # type: ignore[no-any-return]
            self.cache, key, POPULAR_INVOICES_TTL, lambda: self._trending(limit)
        )

    async def _overview(self) -> dict[str, Any]:
        now = utc_now()
        day_ago = now - timedelta(days=1)
        window_start = now - OVERVIEW_WINDOW
        listings, volume_available = self.invoices.listed_totals(now)
        totals = self.offers.live_totals(now)
        lenders = self.offers.top_lenders(window_start, TOP_LENDERS)
        names = self.users.get_many({lender.lender_id for lender in lenders})
        return {
            "active_listings": listings,
            "volume_available": round(volume_available, 2),
            **{k: round(v, 2) if isinstance(v, float) else v for k, v in totals.items()},
            "daily_new_offers": self.offers.count_created_since(day_ago),
            "daily_accepted_offers": self.offers.count_accepted_since(day_ago),
            "average_hours_to_first_offer": _average_hours(self.offers.first_offer_times(window_start)),
            "average_hours_to_acceptance": _average_hours(self.offers.acceptance_times(window_start)),
            "top_lenders": [
                {
                    **asdict(lender),
                    "lender_name": names[lender.lender_id].display_name
                    if lender.lender_id in names
                    else None,
                }
                for lender in lenders
            ],
            "trending": await self._trending(TRENDING_IN_OVERVIEW),
            "generated_at": now,
        }

    async def get_marketplace_overview(self) -> dict[str, Any]:
        return await read_through(self.cache, OVERVIEW_KEY, OVERVIEW_TTL, self._overview)  # type: ignore[no-any-return]

    # --- Offers by party ---

    def _load_offer(self, offer_id: str) -> dict[str, Any] | None:
        offer = self.offers.get_by_id(offer_id)
        return serialize_offer(offer) if offer is not None else None

    async def get_offer_details(self, offer_id: str, actor: Actor) -> dict[str, Any]:
        """A single offer, visible to its lender, the invoice's seller and admins."""
        data = await read_through(
            self.cache, offer_detail_key(offer_id), OFFER_DETAIL_TTL, lambda: self._load_offer(offer_id)
        )
        if data is None:
            raise NotFound("Offer not found", offer_id=offer_id)
        if actor.is_admin or data["lender_id"] == actor.user_id:
            return data  # type: ignore[no-any-return]
        invoice = self.invoices.get_by_id(data["invoice_id"])
        if invoice is not None and str(invoice.seller_id) == actor.user_id:
            return data  # type: ignore[no-any-return]
        raise NotAuthorized("You do not have access to this offer", offer_id=offer_id)

    def _invoice_offers(self, invoice_id: str) -> dict[str, Any]:
        now = utc_now()
        offers = self.offers.get_for_invoice(invoice_id, SELLER_VISIBLE_STATUSES)
        live = [o for o in offers if offer_rules.is_active(o, now)]
        return {
            "invoice_id": invoice_id,
            "offers": [serialize_offer(o) for o in offers],
            "pending_count": len(live),
            "best_offer": serialize_offer(live[0]) if live else None,
        }

    async def get_invoice_offers(self, invoice_id: str, actor: Actor) -> dict[str, Any]:
        """Offers on a seller's invoice in ranking order, with the best live offer."""
        invoice = self.invoices.get_by_id(invoice_id)
        if invoice is None:
            raise NotFound("Invoice not found", invoice_id=invoice_id)
        if not actor.is_admin and str(invoice.seller_id) != actor.user_id:
            raise NotAuthorized("You can only view offers on your own invoices", invoice_id=invoice_id)
        return await read_through(  # type: ignore[no-any-return]
            self.cache,
            invoice_offers_key(invoice_id),
            OFFER_LIST_TTL,
            lambda: self._invoice_offers(invoice_id),
        )

    def _portfolio(
        self,
        lender_id: str,
        filters: LenderOfferFilters,
        page: int,
        limit: int,
        order_by: str | None,
    ) -> dict[str, Any]:
        now = utc_now()
        offers, total = self.offers.search_for_lender(
            lender_id,
            statuses=filters.statuses,
            min_amount=filters.min_amount,
            max_amount=filters.max_amount,
            created_from=filters.created_from,
            created_to=filters.created_to,
            order_by=order_by,
            skip=(page - 1) * limit,
            limit=limit,
        )
        invoices = self.invoices.get_many(list({str(o.invoice_id) for o in offers}))
        items = []
        for offer in offers:
            item = serialize_offer(offer)
            invoice = invoices.get(str(offer.invoice_id))
            if invoice is not None:
                item["invoice_status"] = invoice.status
                item["invoice_amount"] = invoice.amount
                item["invoice_due_date"] = as_utc(invoice.due_date)  # type: ignore[arg-type]
            if offer_rules.is_active(offer, now):
                live = self.offers.get_live_for_invoice(str(offer.invoice_id), now)
                item["market_position"] = offer_rules.market_position(offer, live)
            items.append(item)
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "status_counts": self.offers.lender_status_counts(lender_id),
        }

    async def get_lender_offers(
        self,
        lender_id: str,
        filters: LenderOfferFilters | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str | None = None,
        sort_order: str | None = None,
    ) -> dict[str, Any]:
        """The lender's portfolio of offers, filtered and paginated."""
        filters = filters or LenderOfferFilters()
        order_by = parse_sort(sort_by, sort_order)
        digest = filters_digest({**asdict(filters), "page": page, "limit": limit, "order_by": order_by})
        return await read_through(  # type: ignore[no-any-return]
            self.cache,
            lender_offers_key(lender_id, digest),
            OFFER_LIST_TTL,
            lambda: self._portfolio(lender_id, filters, page, limit, order_by),
        )
