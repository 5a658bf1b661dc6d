class NotFound(ValueError):
    """A budget, transaction, category or notification id did not resolve for the user."""


class InvalidRange(ValueError):
    """A date window ends before it starts, or an amount is zero or negative."""


class PreferenceConflict(ValueError):
    """The user already owns a notification preference row."""


class StorageFailure(RuntimeError):
    """Opaque error from the backing store. Never retried here."""
