"""Pipeline 模块。"""

from .models import (
    ArtifactKind,
    CorpusExample,
    CreditReservation,
    GenerationMode,
    GenerationRequest,
    ParsedArtifact,
    PipelineResult,
    PipelineStage,
    ProviderCall,
    ReservationState,
    RetrievalResult,
    UnitError,
)
from .credit_gate import CreditGate, CreditLedger, Credited
from .orchestrator import StageOrchestrator
from .parser import ResponseParser, parse
from .service import GenerationOutcome, GenerationService, get_generation_service
from .stages import STAGES_BY_MODE, stages_for
from .templates import NOTE_DELIMITER, TemplateId, assemble

__all__ = [
    "ArtifactKind",
    "CorpusExample",
    "CreditGate",
    "CreditLedger",
    "CreditReservation",
    "Credited",
    "GenerationMode",
    "GenerationOutcome",
    "GenerationRequest",
    "GenerationService",
    "NOTE_DELIMITER",
    "ParsedArtifact",
    "PipelineResult",
    "PipelineStage",
    "ProviderCall",
    "ReservationState",
    "ResponseParser",
    "RetrievalResult",
    "STAGES_BY_MODE",
    "StageOrchestrator",
    "TemplateId",
    "UnitError",
    "assemble",
    "get_generation_service",
    "parse",
    "stages_for",
]
