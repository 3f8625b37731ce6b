"""Generation orchestration: attempt state machine, moderation, settlement
and queue-mode polling."""

from aigen.services.generation.classifier import ErrorClassifier, parse_error
from aigen.services.generation.credits import CreditSettlement
from aigen.services.generation.exceptions import (
    ErrorKind,
    GenerationError,
    ProviderError,
    create_generation_error,
)
from aigen.services.generation.flows import BlockingGenerationFlow, WizardGenerationRunner
from aigen.services.generation.interfaces import (
    AuthConfig,
    GenerationConfig,
    LifecycleConfig,
    ModerationConfig,
)
from aigen.services.generation.models import (
    AlertMessages,
    AttemptOutcome,
    GenerationPhase,
    GenerationState,
    GenerationUrls,
    ModerationResult,
    NeedsConfirmation,
    ProcessingCreation,
    Resolved,
    Skipped,
)
from aigen.services.generation.moderation import RuleBasedModerator
from aigen.services.generation.orchestrator import GenerationOrchestrator
from aigen.services.generation.processing_jobs import ProcessingJobsPoller
from aigen.services.generation.queue_generation import QueueGenerationRunner
from aigen.services.generation.queue_poller import QueuePoller


__all__ = [
    "AlertMessages",
    "AttemptOutcome",
    "AuthConfig",
    "BlockingGenerationFlow",
    "CreditSettlement",
    "ErrorClassifier",
    "ErrorKind",
    "GenerationConfig",
    "GenerationError",
    "GenerationOrchestrator",
    "GenerationPhase",
    "GenerationState",
    "GenerationUrls",
    "LifecycleConfig",
    "ModerationConfig",
    "ModerationResult",
    "NeedsConfirmation",
    "ProcessingCreation",
    "ProcessingJobsPoller",
    "ProviderError",
    "QueueGenerationRunner",
    "QueuePoller",
    "Resolved",
    "RuleBasedModerator",
    "Skipped",
    "WizardGenerationRunner",
    "create_generation_error",
    "parse_error",
]
