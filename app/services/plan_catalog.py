from pydantic import BaseModel
from typing import List, Dict, Optional, Iterable
from pathlib import Path
from app.core.config import settings, Settings
import json
import logging

logger = logging.getLogger(__name__)

BILLING_PERIODS = ("monthly", "annually")
PLACEHOLDER_PRICE_PREFIX = "price_xxx"


class PlanCatalogEntry(BaseModel):
    """A billing tier and the processor prices that back it."""
    id: str
    display_name: str
    description: Optional[str] = None
    billing_period: str = "monthly"
    price_ids: Dict[str, Optional[str]] = {}
    amount: Optional[int] = None  # minor units
    currency: str = "usd"
    features: List[str] = []
    is_active: bool = True

    class Config:
        frozen = True

    @property
    def external_price_id(self) -> Optional[str]:
        """Price id for this entry's own billing period."""
        return self.price_ids.get(self.billing_period)

    def all_price_ids(self) -> List[str]:
        return [price_id for price_id in self.price_ids.values() if price_id]


def default_plan_entries(config: Settings) -> List[PlanCatalogEntry]:
    """Built-in catalog; price ids come from the environment."""
    pro_features = [
        "Up to 20 Landing Pages",
        "Advanced Email Automation (5 sequences)",
        "5 Social Media Accounts",
        "Detailed Analytics Dashboard",
        "Priority Support",
    ]
    return [
        PlanCatalogEntry(
            id="plan_basic_monthly",
            display_name="Basic Plan (Monthly)",
            description="Access to core features, billed monthly.",
            billing_period="monthly",
            price_ids={"monthly": config.STRIPE_PRICE_BASIC_MONTHLY},
            amount=1000,
            features=[
                "Up to 5 Landing Pages",
                "Basic Email Automation (1 sequence)",
                "1 Social Media Account",
                "Core Analytics",
            ],
        ),
        PlanCatalogEntry(
            id="plan_pro_monthly",
            display_name="Pro Plan (Monthly)",
            description="Advanced features and higher limits, billed monthly.",
            billing_period="monthly",
            price_ids={
                "monthly": config.STRIPE_PRICE_PRO_MONTHLY,
                "annually": config.STRIPE_PRICE_PRO_ANNUALLY,
            },
            amount=2500,
            features=pro_features,
        ),
        PlanCatalogEntry(
            id="plan_pro_annually",
            display_name="Pro Plan (Annually)",
            description="Advanced features and higher limits, billed annually.",
            billing_period="annually",
            price_ids={"annually": config.STRIPE_PRICE_PRO_ANNUALLY},
            amount=25000,
            features=pro_features,
        ),
    ]


class PlanCatalog:
    """Read-only registry of plans, looked up by plan id or processor price id."""

    def __init__(self, entries: Iterable[PlanCatalogEntry]):
        self._entries: List[PlanCatalogEntry] = []
        self._by_id: Dict[str, PlanCatalogEntry] = {}
        for entry in entries:
            if entry.billing_period not in BILLING_PERIODS:
                raise ValueError(f"Plan {entry.id} has unknown billing period '{entry.billing_period}'")
            if entry.id in self._by_id:
                raise ValueError(f"Duplicate plan id in catalog: {entry.id}")
            self._entries.append(entry)
            self._by_id[entry.id] = entry

    @classmethod
    def from_file(cls, path: str) -> "PlanCatalog":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            raw = raw.get("plans", [])
        logger.info(f"Loaded {len(raw)} plans from {path}")
        return cls(PlanCatalogEntry(**item) for item in raw)

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "PlanCatalog":
        if config.PLAN_CATALOG_FILE:
            return cls.from_file(config.PLAN_CATALOG_FILE)
        return cls(default_plan_entries(config))

    def get(self, plan_id: str) -> Optional[PlanCatalogEntry]:
        return self._by_id.get(plan_id)

    def get_active(self, plan_id: str) -> Optional[PlanCatalogEntry]:
        plan = self._by_id.get(plan_id)
        if plan is None or not plan.is_active:
            return None
        return plan

    def find_by_price_id(self, price_id: Optional[str]) -> Optional[PlanCatalogEntry]:
        """
        Reverse lookup of a processor price id.

        Several entries may share a price (the Pro monthly entry also lists the
        annual price), so the first entry in catalog order wins and the
        resolved name can be approximate.
        """
        if not price_id:
            return None
        for entry in self._entries:
            if price_id in entry.all_price_ids():
                return entry
        return None

    def active_plans(self) -> List[PlanCatalogEntry]:
        return [entry for entry in self._entries if entry.is_active]

    def __len__(self) -> int:
        return len(self._entries)
