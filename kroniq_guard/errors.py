"""
Error taxonomy for the token economy core.

Storage raises these; the access resolver and account service catch them
at the UI boundary and degrade to safe answers instead of propagating.
"""


class KroniqGuardError(Exception):
    """Base class for all kroniq_guard errors."""


class ProfileNotFound(KroniqGuardError):
    """No profile exists for the identity. Recovered by creating one."""

    def __init__(self, user_id: str):
        super().__init__(f"Profile not found: {user_id}")
        self.user_id = user_id


class StoreError(KroniqGuardError):
    """The profile store could not complete an operation."""


class StoreReadFailure(StoreError):
    """A read from the profile store failed."""


class StoreWriteFailure(StoreError):
    """A write to the profile store failed."""


class ReconciliationConflict(KroniqGuardError):
    """Tier flags disagree with the plan field.

    Never raised across the boundary; built so the repair routine can log
    a structured description of what it corrected.
    """

    def __init__(self, user_id: str, plan: str, flags: dict):
        super().__init__(
            f"Tier flags for {user_id} disagree with plan '{plan}': {flags}"
        )
        self.user_id = user_id
        self.plan = plan
        self.flags = flags


class OverdraftWarning(UserWarning):
    """Billing proceeded although the balance was insufficient."""


class GenerationLimitReached(KroniqGuardError):
    """A free plan used up today's quota for a generation medium."""

    def __init__(self, user_id: str, kind: str, limit: int):
        super().__init__(f"Daily {kind} limit reached for {user_id} ({limit}/day)")
        self.user_id = user_id
        self.kind = kind
        self.limit = limit
