# Services module

from app.services.stock_sync_errors import (
    StockSyncError,
    ResolutionError,
    InvalidLineError,
    MappingIncompleteError,
    InsufficientStockError,
    ConcurrencyConflictError,
    StockSystemError,
)
from app.services.ingredient_matching_service import (
    IngredientMatchingService,
    MatchingConfig,
    MatchMethod,
    ConfidenceTier,
)
from app.services.mapping_validation_service import (
    MappingValidationService,
    ValidationResult,
)
from app.services.stock_ledger_service import StockLedger, StockSnapshot
from app.services.recipe_mapping_service import RecipeMappingService
from app.services.sync_audit_service import SyncAuditLog
from app.services.movement_log_service import MovementRecorder
from app.services.stock_deduction_service import (
    StockDeductionService,
    DeductionRequest,
    DeductionLine,
    DeductionResult,
)
from app.services.deduction_retry_service import (
    DeductionRetryQueue,
    RetryConfig,
    compute_backoff_delay,
)
