from fleetdash.app.models.preference import UiPreference

__all__ = [
    "UiPreference",
]
