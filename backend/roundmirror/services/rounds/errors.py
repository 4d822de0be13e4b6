class RoundMirrorError(Exception):
    """Base class for every locally recoverable round-mirror error."""


class StaleEvent(RoundMirrorError):
    """An incremental event that would move the canonical record backwards.

    Raised inside the reconciler only; the event is dropped and counted under
    ``reason``.
    """

    def __init__(self, reason: str, round_id=None, phase=None):
        super().__init__(f"{reason} round={round_id} phase={phase}")
        self.reason = reason
        self.round_id = round_id
        self.phase = phase


class ActionConflict(RoundMirrorError):
    """A submission attempt rejected locally, before any network call."""


class ActionRejected(RoundMirrorError):
    """The server declined an action (insufficient balance, round closed...)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SnapshotFetchFailure(RoundMirrorError):
    """The snapshot endpoint could not be reached or returned garbage."""


class ChannelDisconnect(RoundMirrorError):
    """The push channel dropped; every topic must resync before trusting events."""


class ReadyCheckExpired(RoundMirrorError):
    """A ready-check response was attempted after the local deadline."""


class UnknownTopic(RoundMirrorError):
    pass


class ClockUnavailable(RoundMirrorError):
    pass
