"""NeuroLogg behavioral analysis.

AI-assisted pattern analysis of behavioral logs, with every numeric claim
in the model's report checked against statistics computed from the logs.

Example:
    >>> from neurologg import AnalysisService, create_validated_result
    >>>
    >>> service = AnalysisService()
    >>> result = await service.analyze(logs, crisis_events)
    >>> validated = create_validated_result(result, logs, crisis_events)
"""

__version__ = "1.0.0"

from neurologg.ai.analyzer import AnalysisOptions, AnalysisService, get_service
from neurologg.core.models import (
    AnalysisKind,
    AnalysisResult,
    ChildProfile,
    CrisisRecord,
    LogRecord,
    ValidatedAnalysisResult,
)
from neurologg.validation.validator import (
    ValidationResult,
    create_validated_result,
    generate_citation,
    validate_insights,
)

__all__ = [
    "__version__",
    "AnalysisService",
    "AnalysisOptions",
    "get_service",
    "AnalysisKind",
    "AnalysisResult",
    "ChildProfile",
    "CrisisRecord",
    "LogRecord",
    "ValidatedAnalysisResult",
    "ValidationResult",
    "create_validated_result",
    "generate_citation",
    "validate_insights",
]
