"""
ProposalQueue: the only write path for ideas coming through MCP.

Strategic Role:
- Appends proposals to the review queue with status "pending_review".
- Never ratifies, rejects or executes anything. The Guardian + human review
  subsystem owns every status transition after the append.
- Each proposal gets its id before the write is dispatched. Appending an id
  that is already queued returns the stored row instead of a second one.
"""

import json
import uuid
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from .common import utc_now
from .errors import InvalidInputError, MissingUserScopeError
from .schema import OmegaTable

ProposalKind = Literal["improvement", "outcome", "test-signal"]
PROPOSAL_KINDS = ("improvement", "outcome", "test-signal")
PENDING_REVIEW = "pending_review"

ImprovementType = Literal[
    "prompt_adjustment",
    "strategy_update",
    "threshold_change",
    "new_pattern",
    "schema_change",
    "code_change",
]


class ImprovementPayload(BaseModel):
    improvement_type: ImprovementType
    target_component: str = Field(..., min_length=1)
    proposed_change: Dict[str, Any]
    expected_impact: str = Field(..., min_length=1)
    current_state: Dict[str, Any] = Field(default_factory=dict)
    implementation: Optional[str] = None  # code or migration, for the human reviewer
    risk: str = "Not specified"


class ProposalRecord(BaseModel):
    id: str
    user_id: str
    kind: ProposalKind
    payload: Dict[str, Any]
    status: Literal["pending_review"] = PENDING_REVIEW
    created_at: str


class ProposalQueue:
    table = OmegaTable.PROPOSALS

    def __init__(self, storage, proposed_by: str = "mcp_external_llm"):
        self.storage = storage
        self.proposed_by = proposed_by

    def prepare(self, user_id: Optional[str], payload: Dict[str, Any], kind: str = "improvement",
                proposal_id: Optional[str] = None) -> Dict[str, Any]:
        """Validate and build the row to append, id included. No I/O."""
        if not user_id:
            raise MissingUserScopeError("userId is required for improvement proposals")
        if kind not in PROPOSAL_KINDS:
            raise InvalidInputError(f"Unknown proposal kind '{kind}'. Expected one of: {', '.join(PROPOSAL_KINDS)}")
        if not isinstance(payload, dict):
            raise InvalidInputError("Proposal payload must be an object")

        if kind == "improvement":
            try:
                payload = ImprovementPayload.model_validate(payload).model_dump()
            except ValidationError as e:
                raise InvalidInputError(f"Invalid improvement payload: {e}") from e

        created_at = utc_now()
        return {
            "id": proposal_id or str(uuid.uuid4()),
            "user_id": user_id,
            "kind": kind,
            "payload": {
                **payload,
                "review": {
                    "proposed_by": self.proposed_by,
                    "source": "mcp",
                    "proposed_at": created_at,
                    "requires_human_approval": True,
                },
            },
            "status": PENDING_REVIEW,
            "created_at": created_at,
        }

    def append(self, row: Dict[str, Any]) -> ProposalRecord:
        """Insert a prepared row unless its id is already queued.

        Blocking; the gateway runs it off the event loop.
        """
        existing = self.storage.select(
            self.table.value, ["id", "user_id", "kind", "payload", "status", "created_at"],
            {"id": row["id"]}, 1,
        )
        if existing:
            stored = existing[0]
            if stored["user_id"] != row["user_id"]:
                raise InvalidInputError(f"Proposal id {row['id']} is already in use")
            payload = stored["payload"]
            if isinstance(payload, str):
                payload = json.loads(payload)
            return ProposalRecord(**{**stored, "payload": payload})

        self.storage.insert(self.table.value, row)
        return ProposalRecord(**row)
