"""Error taxonomy shared by the generation pipeline and the publisher."""


class PhotoListerError(Exception):
    """Base class for every error raised by photolister."""


class AuthenticationError(PhotoListerError):
    """No usable marketplace credential, or the token refresh failed."""


class AccessDenied(PhotoListerError):
    pass


class ListingNotFound(PhotoListerError):
    pass


class PublishInProgress(PhotoListerError):
    """Another worker holds the publish claim on this listing."""


class SearchError(PhotoListerError):
    """Similarity or sold-item search failed. Always recovered as empty results."""


class ContentGenerationError(PhotoListerError):
    """AI analysis or generation failed. Always recovered by the template fallback."""


class ImageHostError(PhotoListerError):
    """A single image could not be hosted."""


class ValidationError(PhotoListerError):
    """Listing payload violates marketplace rules. Carries one message per violation."""

    def __init__(self, errors: list[str], payload: dict | None = None):
        self.errors = list(errors)
        self.payload = payload or {}
        super().__init__("; ".join(self.errors) or "Invalid listing")


class PublishError(PhotoListerError):
    """
    The marketplace rejected a submission.

    ``stage`` is ``"inventory_item"`` or ``"offer"`` so a failure before anything
    was created can be told apart from one that left an inventory item behind.
    ``payload`` is the exact body that was sent.
    """

    def __init__(
        self,
        message: str,
        stage: str,
        payload: dict | None = None,
        status_code: int | None = None,
        orphaned_sku: str | None = None,
    ):
        self.message = message
        self.stage = stage
        self.payload = payload or {}
        self.status_code = status_code
        self.orphaned_sku = orphaned_sku
        super().__init__(f"{stage}: {message}")

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "stage": self.stage,
            "status_code": self.status_code,
            "orphaned_sku": self.orphaned_sku,
            "payload": self.payload,
        }
