"""
AnalyticsResponseBuilder: builds the JSON envelope of the analytics API.

Every response has the shape ``{success, data?, error?, code?, meta?}``.
``data`` is the camelCase dump of an analytics model; ``meta`` carries the
generation timestamp and, when the dataset is not loaded yet, a message.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel

from core.errors import AnalyticsError


def _generated_at() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _build_meta(message: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"generatedAt": _generated_at()}
    if message:
        meta["message"] = message
    meta.update({k: v for k, v in extra.items() if v is not None})
    return meta


def dump_model(model: BaseModel, exclude: Optional[Any] = None) -> Dict[str, Any]:
    """Serialize an analytics model with camelCase keys."""
    return model.model_dump(by_alias=True, mode="json", exclude=exclude)


# ============================================================================
# ANALYTICS RESPONSE BUILDER
# ============================================================================
class AnalyticsResponseBuilder:
    """
    Builds the response envelope of every analytics endpoint.

    Success and error responses share the same top-level keys so clients
    can branch on ``success`` and ``code``.
    """

    @staticmethod
    def build(
        data: BaseModel,
        message: Optional[str] = None,
        exclude: Optional[Any] = None,
        **meta: Any,
    ) -> Dict[str, Any]:
        """
        Build a success envelope.

        Args:
            data: Analytics model to serialize
            message: Optional notice (e.g. dataset not loaded yet)
            exclude: Pydantic exclude mapping applied when dumping ``data``
            **meta: Extra meta entries (None values are dropped)

        Returns:
            Dict ready to be serialized as JSON
        """
        return {
            "success": True,
            "data": dump_model(data, exclude=exclude),
            "meta": _build_meta(message, **meta),
        }

    @staticmethod
    def build_error(error: AnalyticsError) -> Dict[str, Any]:
        """Build an error envelope from a typed analytics error."""
        return AnalyticsResponseBuilder.build_failure(error.message, error.code)

    @staticmethod
    def build_failure(message: str, code: str) -> Dict[str, Any]:
        """Build an error envelope from a raw message and code."""
        return {
            "success": False,
            "error": message,
            "code": code,
            "meta": _build_meta(),
        }
