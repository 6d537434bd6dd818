"""
Default patient context provider.

Reads the latest assembled bundle from ``patient_contexts``. Any callable with
the same signature can be injected into the pipeline instead.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from packages.db.database import get_session
from packages.db.models import PatientContext
from packages.shared.models.domain import ContextPack, ContextPackMetadata
from packages.shared.utils.json_utils import canonical_json, sha256_hex

logger = logging.getLogger(__name__)

CONTEXT_VERSION = "v1"

ContextProvider = Callable[[str], ContextPack]


class ContextBuildError(Exception):
    """The context bundle for a patient could not be produced."""


def compute_inputs_hash(payload: dict) -> str:
    return sha256_hex(canonical_json(payload))


def build_patient_context_pack(patient_id: str) -> ContextPack:
    with get_session() as session:
        row = session.query(PatientContext).filter_by(patient_id=patient_id).first()
        if row is None:
            raise ContextBuildError(f"No context available for patient {patient_id}")
        payload = {
            "patient_id": row.patient_id,
            "demographics": row.demographics or {},
            "current_measures": row.current_measures or {},
            "anamnesis": row.anamnesis or {"entries": []},
            "funnel_runs": row.funnel_runs or {"runs": []},
        }

    return ContextPack(
        **payload,
        metadata=ContextPackMetadata(
            inputs_hash=compute_inputs_hash(payload),
            context_version=CONTEXT_VERSION,
            generated_at=datetime.now(timezone.utc),
        ),
    )
