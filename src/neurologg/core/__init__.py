"""Core data models for NeuroLogg.

- **LogRecord** / **CrisisRecord**: records supplied by the record store
- **ChildProfile**: optional context rendered into prompts
- **AnalysisResult**: structured report produced by the model
- **ValidatedAnalysisResult**: report plus validation verdict and citation
"""

from neurologg.core.models import (
    AnalysisKind,
    AnalysisResult,
    ChildProfile,
    Correlation,
    CorrelationStrength,
    CrisisRecord,
    LogRecord,
    StrategyOutcome,
    ValidatedAnalysisResult,
)

__all__ = [
    "AnalysisKind",
    "AnalysisResult",
    "ChildProfile",
    "Correlation",
    "CorrelationStrength",
    "CrisisRecord",
    "LogRecord",
    "StrategyOutcome",
    "ValidatedAnalysisResult",
]
