"""
Error taxonomy for the lot integrity chain.

A broken chain is not an exception: the validator reports it as data
(``ChainValidationResult.valid == False``).
"""


class ChainError(Exception):
    """Base class; ``status_code`` is what the HTTP layer answers with."""
    status_code = 500
    code = "chain_error"


class EncodingError(ChainError):
    """Lot data cannot be canonicalized (bad timestamp, non-finite number)."""
    status_code = 422
    code = "encoding_error"


class IncompletePrerequisiteError(ChainError):
    """Business preconditions for finalization are not met."""
    status_code = 422
    code = "incomplete_prerequisite"


class AllocationConflictError(ChainError):
    """Index allocation lost a race. Retrying the whole finalization is safe."""
    status_code = 409
    code = "allocation_conflict"


class PersistenceError(ChainError):
    """The store failed, after retries where the path allows them."""
    status_code = 503
    code = "persistence_error"


class LotNotFoundError(ChainError):
    status_code = 404
    code = "lot_not_found"


class LotAlreadyFinalizedError(ChainError):
    status_code = 409
    code = "lot_already_finalized"


class RepairConfirmationRequiredError(ChainError):
    """Repair would rebuild a unit's chain from genesis and was not confirmed."""
    status_code = 409
    code = "repair_confirmation_required"


class ChainRepairDefectError(ChainError):
    """A completed repair did not revalidate. Internal defect."""
    status_code = 500
    code = "repair_did_not_converge"
