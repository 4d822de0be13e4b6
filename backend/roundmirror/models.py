import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def _to_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_ms(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Participant:
    wallet: str
    status: str = 'registered'
    joined_at: Optional[int] = None

    @classmethod
    def from_payload(cls, data) -> 'Participant':
        if isinstance(data, str):
            return cls(wallet=data)
        return cls(
            wallet=data.get('wallet') or data.get('walletAddress'),
            status=data.get('status') or 'registered',
            joined_at=_to_ms(data.get('joinedAt')),
        )

    def to_dict(self):
        return {
            'wallet': self.wallet,
            'status': self.status,
            'joined_at': self.joined_at,
        }


# camelCase wire key -> RoundRecord attribute
_WIRE_FIELDS = {
    'roundId': 'round_id',
    'phase': 'phase',
    'sequence': 'sequence',
    'deadlines': 'deadlines',
    'participants': 'participants',
    'pools': 'pools',
    'priceAnchors': 'price_anchors',
    'result': 'result',
}


def parse_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a canonical camelCase payload into RoundRecord field values.

    Keys that are not part of the record are collected under ``extra``.
    Absent keys are absent from the result, so the output doubles as a patch.
    """
    fields: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for key, value in (data or {}).items():
        attr = _WIRE_FIELDS.get(key)
        if attr is None:
            extra[key] = value
        elif attr == 'round_id':
            fields[attr] = None if value is None else str(value)
        elif attr == 'sequence':
            fields[attr] = int(value or 0)
        elif attr == 'deadlines':
            fields[attr] = {k: _to_ms(v) for k, v in (value or {}).items() if _to_ms(v) is not None}
        elif attr == 'participants':
            fields[attr] = [Participant.from_payload(p) for p in (value or [])]
        elif attr == 'pools':
            fields[attr] = {k: _to_float(v) or 0.0 for k, v in (value or {}).items()}
        elif attr == 'price_anchors':
            fields[attr] = {k: _to_float(v) for k, v in (value or {}).items()}
        else:
            fields[attr] = value
    if extra:
        fields['extra'] = extra
    return fields


@dataclass
class RoundRecord:
    round_id: str
    phase: str
    sequence: int = 0
    deadlines: Dict[str, int] = field(default_factory=dict)
    participants: List[Participant] = field(default_factory=list)
    pools: Dict[str, float] = field(default_factory=dict)
    price_anchors: Dict[str, Optional[float]] = field(default_factory=dict)
    result: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'RoundRecord':
        fields = parse_fields(data)
        if not fields.get('round_id') or not fields.get('phase'):
            raise ValueError('round payload requires roundId and phase')
        return cls(**fields)

    def participant(self, wallet: str) -> Optional[Participant]:
        for p in self.participants:
            if p.wallet == wallet:
                return p
        return None

    def upsert_participant(self, incoming: Participant) -> bool:
        """Insert or update by wallet. Join order is kept on update."""
        existing = self.participant(incoming.wallet)
        if existing is None:
            self.participants.append(copy.copy(incoming))
            return True
        changed = False
        if incoming.status and incoming.status != existing.status:
            existing.status = incoming.status
            changed = True
        if existing.joined_at is None and incoming.joined_at is not None:
            existing.joined_at = incoming.joined_at
            changed = True
        return changed

    def remove_participant(self, wallet: str) -> bool:
        before = len(self.participants)
        self.participants = [p for p in self.participants if p.wallet != wallet]
        return len(self.participants) != before

    def to_dict(self):
        return {
            'round_id': self.round_id,
            'phase': self.phase,
            'sequence': self.sequence,
            'deadlines': dict(self.deadlines),
            'participants': [p.to_dict() for p in self.participants],
            'pools': dict(self.pools),
            'price_anchors': dict(self.price_anchors),
            'result': self.result,
            'extra': copy.deepcopy(self.extra),
        }


class ActionStatus(str, Enum):
    IDLE = 'idle'
    SUBMITTING = 'submitting'
    CONFIRMED = 'confirmed'
    REJECTED = 'rejected'


ACTION_KINDS = ('bet', 'join', 'leave', 'ready_response')


@dataclass
class PendingAction:
    action_id: str
    user: str
    round_id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: ActionStatus = ActionStatus.SUBMITTING
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    submitted_at: Optional[int] = None
    resolved_at: Optional[int] = None

    @property
    def outstanding(self) -> bool:
        return self.status == ActionStatus.SUBMITTING

    def to_dict(self):
        return {
            'action_id': self.action_id,
            'user': self.user,
            'round_id': self.round_id,
            'kind': self.kind,
            'payload': dict(self.payload),
            'status': self.status.value,
            'error': self.error,
            'result': self.result,
            'submitted_at': self.submitted_at,
            'resolved_at': self.resolved_at,
        }


@dataclass(frozen=True)
class TimerState:
    phase: Optional[str]
    deadline: Optional[int]
    remaining_ms: int
    urgency: str

    @property
    def seconds(self) -> int:
        return self.remaining_ms // 1000

    @property
    def expired(self) -> bool:
        return self.remaining_ms == 0

    def to_dict(self):
        return {
            'phase': self.phase,
            'deadline': self.deadline,
            'remaining_ms': self.remaining_ms,
            'seconds': self.seconds,
            'urgency': self.urgency,
            'expired': self.expired,
        }


@dataclass(frozen=True)
class AnimatedValue:
    displayed: Optional[float]
    target: Optional[float]
    start_value: Optional[float]
    animation_start: Optional[int]

    def to_dict(self):
        return {
            'displayed': self.displayed,
            'target': self.target,
            'start_value': self.start_value,
            'animation_start': self.animation_start,
        }
