"""
Core claims lifecycle: guides, batches, state machine, validation and audit.
"""

from tiss_claims.core.audit import AuditTrail
from tiss_claims.core.batch_assembler import BatchAssembler
from tiss_claims.core.denial_codes import DenialInterpretation, interpret_denial
from tiss_claims.core.glosas import GlosaService
from tiss_claims.core.guide_store import GuideStore, OutcomeRecord
from tiss_claims.core.state_machine import BatchStateMachine, can_transition
from tiss_claims.core.validation import validate_batch, validate_guide

__all__ = [
    "AuditTrail",
    "BatchAssembler",
    "DenialInterpretation",
    "interpret_denial",
    "GlosaService",
    "GuideStore",
    "OutcomeRecord",
    "BatchStateMachine",
    "can_transition",
    "validate_batch",
    "validate_guide",
]
