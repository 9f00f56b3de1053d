"""
Return-to-client support: validating correction items and turning a
returned record into the prompts a client sees.

Resolution is all-or-nothing. A resubmit treats every item as addressed;
the items stay on the record for audit but no longer produce cues.
"""

from typing import Any, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from kyc_workflow.errors import ValidationError
from kyc_workflow.schemas import CorrectionCues, ReturnedItem, ReturnedItemType


def require_reason(reason: Optional[str], action: str = "return") -> str:
    if reason is None or not reason.strip():
        raise ValidationError(f"A reason is required to {action}")
    return reason.strip()


def coerce_items(items: Optional[Iterable[Union[ReturnedItem, dict]]]) -> List[ReturnedItem]:
    """Validate correction items, keeping their order."""
    items = list(items or [])
    if not items:
        raise ValidationError("At least one returned item is required")

    coerced: List[ReturnedItem] = []
    for index, item in enumerate(items):
        if isinstance(item, ReturnedItem):
            coerced.append(item.model_copy(deep=True))
            continue
        try:
            coerced.append(ReturnedItem.model_validate(item))
        except PydanticValidationError as e:
            problems = "; ".join(err["msg"] for err in e.errors())
            raise ValidationError(f"Returned item {index + 1} is invalid: {problems}") from e
    return coerced


def cues_for(items: Iterable[ReturnedItem]) -> CorrectionCues:
    cues = CorrectionCues()
    for item in items:
        if item.type == ReturnedItemType.DOCUMENT:
            cues.upload_documents.append(item)
        else:
            cues.edit_fields.append(item)
    return cues


def correction_cues(record: Any, returned_status: Any) -> CorrectionCues:
    """Cues for a record still sitting in its RETURNED status, otherwise empty."""
    if record.status != returned_status:
        return CorrectionCues()
    return cues_for(record.returned_items)


def item_label(item: ReturnedItem) -> str:
    if item.document_type is not None:
        return item.document_type.value
    return item.field or "Item"


def summarize(items: Iterable[ReturnedItem]) -> str:
    return "\n".join(f"• {item.message}" for item in items)
