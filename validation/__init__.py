from .validator import (
    ModelValidator,
    ValidationResult,
    CrossValidationResult,
    ValidationReport,
    ValidationStatus,
    Stability,
    classify_stability,
)

__all__ = [
    'ModelValidator',
    'ValidationResult',
    'CrossValidationResult',
    'ValidationReport',
    'ValidationStatus',
    'Stability',
    'classify_stability',
]
