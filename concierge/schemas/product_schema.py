"""Catalog product and shopper preference models."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Product(BaseModel):
    """Read-only catalog snapshot entry."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    title: str = ""
    slug: Optional[str] = None
    category: str
    metal: Optional[str] = None
    stone: Optional[str] = None
    price: float = Field(ge=0)
    in_stock: bool = True
    ship_days: int = Field(default=5, ge=0)
    tags: tuple[str, ...] = ()
    bestseller_score: float = Field(default=0.0, ge=0.0, le=1.0)
    margin_score: float = Field(default=0.0, ge=0.0, le=1.0)
    ready_to_ship: bool = False


class Preferences(BaseModel):
    """Shopper filters collected across turns. Every field is optional."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    category: Optional[str] = None
    budget_min: Optional[float] = Field(default=None, ge=0)
    budget_max: Optional[float] = Field(default=None, ge=0)
    metal: Optional[str] = None
    stone: Optional[str] = None
    style_tags: Optional[list[str]] = None
    ready_to_ship: Optional[bool] = None

    def merged(self, update: "Preferences") -> "Preferences":
        """Return a copy where every field set on ``update`` wins."""
        changes = update.model_dump(exclude_none=True)
        return self.model_copy(update=changes)

    def missing(self, required: tuple[str, ...]) -> list[str]:
        """Required filter fields with no value yet, in configured order."""
        values = self.model_dump()
        return [name for name in required if values.get(name) in (None, [])]
