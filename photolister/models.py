from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

TOTAL_STEPS = 5


class Credential(BaseModel):
    owner_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None


class Money(BaseModel):
    value: str | None = None
    currency: str = "USD"


class Category(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    category_id: str | None = Field(default=None, alias="categoryId")
    category_name: str | None = Field(default=None, alias="categoryName")


class SearchResult(BaseModel):
    """Item summary as returned by the Browse API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    item_id: str = Field(default="", alias="itemId")
    title: str = ""
    price: Money | None = None
    categories: list[Category] = []
    item_specifics: dict[str, str] = Field(default_factory=dict, alias="itemSpecifics")


class SoldItem(SearchResult):
    sold_price: Money | None = Field(default=None, alias="soldPrice")
    sold_date: str | None = Field(default=None, alias="soldDate")


class ListingContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    description: str
    condition_description: str = Field(alias="conditionDescription")


class DraftStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHING = "publishing"
    PUSHED = "pushed"


class ListingDraft(BaseModel):
    id: str
    owner_id: str
    title: str
    description: str
    price: str = "0.00"
    condition: str
    condition_description: str = ""
    category: str = ""
    category_id: str | None = None
    item_specifics: dict[str, str] = {}
    images: list[str] = []
    external_id: str | None = None
    sku: str | None = None
    status: DraftStatus = DraftStatus.DRAFT
    created_at: str | None = None
    updated_at: str | None = None

    def public_dict(self) -> dict:
        """Listing as returned over HTTP, with inline image data elided."""
        data = self.model_dump(mode="json")
        data["images"] = [
            img if not img.startswith("data:") else f"{img[:32]}..." for img in self.images
        ]
        return data


class ProgressState(BaseModel):
    job_id: str
    owner_id: str | None = None
    status: str = "not_started"
    current_step: str | None = None
    steps_completed: int = 0
    total_steps: int = TOTAL_STEPS
    error: str | None = None
    listing_id: str | None = None

    def to_response(self) -> dict:
        body = {
            "status": self.status,
            "currentStep": self.current_step,
            "stepsCompleted": self.steps_completed,
            "totalSteps": self.total_steps,
        }
        if self.error is not None:
            body["error"] = self.error
        if self.listing_id is not None:
            body["listingId"] = self.listing_id
        return body
