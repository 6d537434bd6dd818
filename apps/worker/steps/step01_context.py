"""
Step 1: Patient context pack.
"""
from __future__ import annotations

import logging

from apps.worker.lib.context_pack import ContextBuildError, ContextProvider
from packages.shared.models.domain import ContextPack

logger = logging.getLogger(__name__)


def load_context_pack(run_id: str, patient_id: str, provider: ContextProvider) -> ContextPack:
    """Fetch the context bundle; every provider failure surfaces as ContextBuildError."""
    try:
        pack = provider(patient_id)
    except ContextBuildError:
        raise
    except Exception as exc:
        raise ContextBuildError(f"Context provider failed: {exc}") from exc

    if not isinstance(pack, ContextPack):
        raise ContextBuildError(f"Context provider returned {type(pack).__name__}, expected ContextPack")

    logger.info(f"[{run_id}] Context pack ready (inputs_hash={pack.metadata.inputs_hash[:12]})")
    return pack
