"""Case intake and case-detail edits (reclassify, evidence, tags).

Intake validates the kind-specific payload, classifies it and stores the
case already opened, all as one ``created`` AuditEntry. New anti-cheat
flags with a known subject then run the clustering rule.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import UUID

from pydantic import BaseModel, TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from casetriage.core.constants import CLUSTER_TAG, DELETION_TAG, SYSTEM_ACTOR_ID
from casetriage.db.enums import AuditAction, CaseKind, CaseStatus, Severity
from casetriage.db.models import AuditEntry, Case
from casetriage.schemas.case import FIELDS_MODELS, CaseIntake
from casetriage.services import case_store, clustering
from casetriage.services.case_store import UpdateResult
from casetriage.services.classification import Classification, classify
from casetriage.services.clustering import ClusterDecision
from casetriage.services.collaborators import notify_safely, resolve_blobs
from casetriage.services.errors import StoreTimeoutError, ValidationFailedError

logger = logging.getLogger(__name__)

_intake_adapter: TypeAdapter = TypeAdapter(CaseIntake)

# Tags owned by the engine; operators cannot add or remove them directly
RESERVED_TAGS = frozenset({DELETION_TAG, CLUSTER_TAG})


def _reject_reserved_tags(tags: Iterable[str]) -> None:
    reserved = RESERVED_TAGS.intersection(tag.strip() for tag in tags if tag)
    if reserved:
        raise ValidationFailedError(f"Reserved tags are managed by the engine: {', '.join(sorted(reserved))}")


@dataclass
class IntakeResult:
    case: Case
    audit_entry: AuditEntry
    classification: Classification
    cluster: ClusterDecision | None = None

    @property
    def audit_entry_id(self) -> int:
        return self.audit_entry.id


def _validation_error(message: str, exc: ValidationError) -> ValidationFailedError:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return ValidationFailedError(f"{message}: {problems}")


def parse_intake(payload: BaseModel | dict[str, Any]):
    """Validate a raw intake payload against the kind's field schema."""
    if isinstance(payload, BaseModel):
        return payload
    try:
        return _intake_adapter.validate_python(payload)
    except ValidationError as exc:
        raise _validation_error("Invalid case payload", exc) from exc


def _validate_fields(kind: str, fields: dict[str, Any]) -> dict[str, Any]:
    try:
        model = FIELDS_MODELS[kind].model_validate(fields)
    except ValidationError as exc:
        raise _validation_error(f"Invalid {kind} fields", exc) from exc
    return model.model_dump(mode="json", exclude_none=True)


def _evidence_refs(blob_ids: Iterable[str], actor_id: str) -> list[dict[str, Any]]:
    added_at = datetime.now(timezone.utc).isoformat()
    return [
        {**ref, "added_at": added_at, "added_by": actor_id}
        for ref in resolve_blobs(blob_ids)
    ]


def intake(
    db: Session,
    payload: BaseModel | dict[str, Any],
    *,
    actor_id: str,
    auto_open: bool = True,
) -> IntakeResult:
    """
    Create a classified case.

    With ``auto_open`` (the default) the case is stored ``open`` so it
    enters the operator queue immediately; the creation entry records both.

    Raises:
        ValidationFailedError, BlobNotFoundError, StoreTimeoutError,
        AuditWriteError
    """
    request = parse_intake(payload)
    kind = CaseKind(request.kind)
    if kind is not CaseKind.ANTI_CHEAT_FLAG and not request.subject_user_id:
        raise ValidationFailedError(f"subject_user_id is required for {kind.value} cases")
    _reject_reserved_tags(request.tags)

    fields = request.fields.model_dump(mode="json", exclude_none=True)
    classification = classify(kind, fields)
    evidence = _evidence_refs(request.evidence, actor_id)

    result = case_store.create(
        db,
        kind=kind,
        fields=fields,
        category=classification.category.value,
        severity=classification.severity.value,
        actor_id=actor_id,
        subject_user_id=request.subject_user_id,
        status=CaseStatus.OPEN if auto_open else CaseStatus.NEW,
        evidence=evidence,
        tags=list(request.tags),
        details={"rule": classification.rule, "auto_opened": auto_open},
    )

    cluster = None
    if kind is CaseKind.ANTI_CHEAT_FLAG and request.subject_user_id:
        try:
            cluster = clustering.evaluate_cluster(db, request.subject_user_id, actor_id=SYSTEM_ACTOR_ID)
        except StoreTimeoutError:
            # The flag is already stored; the next flag for this user re-evaluates the cluster.
            logger.warning(
                "Cluster evaluation timed out after intake of %s",
                result.case.case_number,
                exc_info=True,
            )
    elif kind is not CaseKind.ANTI_CHEAT_FLAG:
        notify_safely(
            request.subject_user_id,
            {
                "type": "case_received",
                "case_id": str(result.case.id),
                "case_number": result.case.case_number,
            },
        )

    return IntakeResult(
        case=result.case,
        audit_entry=result.audit_entry,
        classification=classification,
        cluster=cluster,
    )


def reclassify(
    db: Session,
    case_id: UUID,
    *,
    actor_id: str,
    updates: dict[str, Any],
) -> UpdateResult:
    """
    Merge field updates and re-run classification.

    Keys set to None are removed. Severity never drops: the higher of the
    current and the newly classified severity is kept.
    """
    if "kind" in updates:
        raise ValidationFailedError("Case kind is immutable")
    details: dict[str, Any] = {"updated_fields": sorted(updates)}

    def mutator(case: Case) -> None:
        if case.is_synthetic:
            raise ValidationFailedError("Synthetic cluster cases cannot be reclassified", case_id=case.id)
        merged = {**(case.fields or {}), **updates}
        merged = {key: value for key, value in merged.items() if value is not None}
        fields = _validate_fields(case.kind, merged)
        result = classify(case.kind, fields)

        severity = result.severity
        if case.severity:
            severity = Severity.highest(Severity(case.severity), result.severity)
        details["rule"] = result.rule

        case.fields = fields
        case.category = result.category.value
        case.severity = severity.value

    result = case_store.update(
        db,
        case_id,
        mutator,
        actor_id=actor_id,
        action=AuditAction.RECLASSIFIED,
        details=details,
    )
    case = result.case
    if (
        result.audit_entry is not None
        and case.kind == CaseKind.ANTI_CHEAT_FLAG.value
        and case.subject_user_id
        and not case.is_synthetic
    ):
        clustering.evaluate_cluster(db, case.subject_user_id, actor_id=SYSTEM_ACTOR_ID)
    return result


def add_evidence(
    db: Session,
    case_id: UUID,
    *,
    actor_id: str,
    blob_ids: Iterable[str],
) -> UpdateResult:
    """Append attachment references; blobs already attached are skipped."""
    refs = _evidence_refs(blob_ids, actor_id)
    added: list[str] = []

    def mutator(case: Case) -> None:
        existing = {item.get("blob_id") for item in case.evidence or []}
        fresh = [ref for ref in refs if ref["blob_id"] not in existing]
        added[:] = [ref["blob_id"] for ref in fresh]
        if fresh:
            case.evidence = [*(case.evidence or []), *fresh]

    return case_store.update(
        db,
        case_id,
        mutator,
        actor_id=actor_id,
        action=AuditAction.EVIDENCE_ADDED,
        details={"blob_ids": added},
    )


def update_tags(
    db: Session,
    case_id: UUID,
    *,
    actor_id: str,
    add: Iterable[str] = (),
    remove: Iterable[str] = (),
) -> UpdateResult:
    add = [tag.strip() for tag in add if tag and tag.strip()]
    remove = [tag.strip() for tag in remove if tag and tag.strip()]
    _reject_reserved_tags(add + remove)

    def mutator(case: Case) -> None:
        tags = set(case.tags or [])
        tags.update(add)
        tags.difference_update(remove)
        case.tags = sorted(tags)

    return case_store.update(
        db,
        case_id,
        mutator,
        actor_id=actor_id,
        action=AuditAction.TAGS_CHANGED,
        details={"added": sorted(add), "removed": sorted(remove)},
    )
