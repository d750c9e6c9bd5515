from typing import Iterable


class RandomisationError(Exception):
    """Base class for failures raised by the randomisation core."""


class ConfigInvalidError(RandomisationError):
    """Strategy settings failed validation. Carries every violation found."""

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class StratificationMismatchError(RandomisationError):
    """Submitted factor/level set does not match the declared stratification."""


class PersistenceFailureError(RandomisationError):
    """An allocation was claimed but its value could not be written to the record."""

    def __init__(self, message: str, allocation_id: int | None = None):
        self.allocation_id = allocation_id
        super().__init__(message)


class UnknownRandomiserError(RandomisationError):
    """No strategy is registered for the requested randomiser type."""
