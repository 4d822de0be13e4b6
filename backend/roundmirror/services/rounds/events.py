"""Typed decoding of raw push-channel messages.

The backend emits loosely shaped dictionaries under many event names. Each
topic session runs them through :func:`decode`, which returns typed messages
(or nothing, when the message belongs to another topic).
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from roundmirror.models import Participant, parse_fields
from .modes import GameMode

PRICE_EVENT = 'price_update'
READY_CHECK_EVENT = 'scheduled_ready_check'
MATCH_LIST_EVENT = 'scheduled_matches_list'

JOIN_TYPES = frozenset({'player_joined', 'player_registered'})
LEAVE_TYPES = frozenset({'player_left', 'player_unregistered'})
ELIMINATED_TYPES = frozenset({'player_eliminated'})

# native incremental field -> (record field, sub key)
_NATIVE_PATCH_KEYS = {
    'lockTime': ('deadlines', 'betting'),
    'endTime': ('deadlines', 'locked'),
    'predictionDeadline': ('deadlines', 'predicting'),
    'bettingEndTime': ('deadlines', 'betting'),
    'battleEndTime': ('deadlines', 'in_progress'),
    'registrationCloses': ('deadlines', 'registration_open'),
    'upPool': ('pools', 'up'),
    'downPool': ('pools', 'down'),
    'totalBetsTokenA': ('pools', 'token_a'),
    'totalBetsTokenB': ('pools', 'token_b'),
    'prizePoolLamports': ('pools', 'prize'),
    'startPrice': ('priceAnchors', 'start'),
    'endPrice': ('priceAnchors', 'end'),
    'winner': ('result', None),
}

_ROUND_ID_KEYS = ('roundId', 'gameId', 'battleId', 'matchId', 'id')


@dataclass(frozen=True)
class RoundEvent:
    type: str
    round_id: Optional[str]
    phase: Optional[str]
    patch: Dict[str, Any] = field(default_factory=dict)
    sequence: Optional[int] = None
    created: bool = False
    upserts: Tuple[Participant, ...] = ()
    removals: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ActionResult:
    kind: str
    ok: bool
    error: Optional[str] = None
    action_id: Optional[str] = None
    round_id: Optional[str] = None
    user: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class PriceSample:
    series: str
    value: float


@dataclass(frozen=True)
class ReadyCheckOpened:
    match_id: str
    expires_at: int


def _round_id_of(data: Dict[str, Any]) -> Optional[str]:
    for key in _ROUND_ID_KEYS:
        if data.get(key) is not None:
            return str(data[key])
    return None


def _split_record_fields(mode: GameMode, fields: Dict[str, Any]):
    round_id = fields.pop('round_id', None)
    phase = fields.pop('phase', None)
    sequence = fields.pop('sequence', None)
    # result belongs to terminal phases only; per-cycle outcomes stay in extra
    if 'result' in fields and phase is not None and not mode.is_terminal(phase):
        fields.setdefault('extra', {})['last_result'] = fields.pop('result')
    return round_id, phase, sequence, fields


def _native_to_canonical(payload: Dict[str, Any]) -> Dict[str, Any]:
    canonical: Dict[str, Any] = {}
    for key, value in payload.items():
        target = _NATIVE_PATCH_KEYS.get(key)
        if target is None:
            canonical[key] = value
            continue
        name, sub = target
        if sub is None:
            canonical[name] = value
        else:
            canonical.setdefault(name, {})[sub] = value
    if 'roundNumber' in payload and 'sequence' not in payload:
        canonical['sequence'] = payload['roundNumber']
        canonical.pop('roundNumber', None)
    return canonical


def _decode_state(mode: GameMode, key: Optional[str], name: str, data: Dict[str, Any]) -> Optional[RoundEvent]:
    if mode.round_ref == 'asset' and data.get('asset') not in (None, key):
        return None
    fields = parse_fields(mode.normalize(data))
    round_id, phase, sequence, patch = _split_record_fields(mode, fields)
    if round_id is None:
        return None
    if mode.round_ref == 'matchId' and key is not None and round_id != key:
        return None
    return RoundEvent(type=name, round_id=round_id, phase=phase, patch=patch,
                      sequence=sequence, created=True)


def _decode_incremental(mode: GameMode, key: Optional[str], data: Dict[str, Any]) -> List[Any]:
    etype = data.get('type') or 'update'
    payload = dict(data.get('data') or {})
    if mode.round_ref == 'asset' and (payload.get('asset') or data.get('asset')) not in (None, key):
        return []

    if etype == PRICE_EVENT:
        samples = []
        for series, value in payload.items():
            if isinstance(value, dict):
                value = value.get('price')
            if isinstance(value, (int, float)):
                samples.append(PriceSample(series=_snake(series), value=float(value)))
        return samples

    round_id = _round_id_of(payload) or _round_id_of(data)
    for k in _ROUND_ID_KEYS:
        payload.pop(k, None)
    wallet = payload.pop('wallet', None) or payload.pop('walletAddress', None)
    upserts: Tuple[Participant, ...] = ()
    removals: Tuple[str, ...] = ()
    if wallet and etype in JOIN_TYPES:
        upserts = (Participant(wallet=wallet, status=payload.pop('status', None) or 'registered',
                               joined_at=payload.pop('joinedAt', None)),)
    elif wallet and etype in ELIMINATED_TYPES:
        upserts = (Participant(wallet=wallet, status='eliminated'),)
    elif wallet and etype in LEAVE_TYPES:
        removals = (wallet,)

    fields = parse_fields(_native_to_canonical(payload))
    _, phase, sequence, patch = _split_record_fields(mode, fields)
    if phase is None:
        phase = mode.type_phases.get(etype)
        if 'result' in patch and phase is not None and not mode.is_terminal(phase):
            patch.setdefault('extra', {})['last_result'] = patch.pop('result')
    return [RoundEvent(type=etype, round_id=round_id, phase=phase, patch=patch, sequence=sequence,
                       created=etype in mode.created_types, upserts=upserts, removals=removals)]


def _decode_ack(mode: GameMode, key: Optional[str], name: str, data: Any) -> Optional[ActionResult]:
    kind, ok = mode.ack_events[name]
    if not isinstance(data, dict):
        data = {'error': data} if ok is False else {}
    if mode.round_ref == 'matchId' and data.get('matchId') not in (None, key):
        return None
    if ok is None:
        ok = bool(data.get('success'))
    result = data.get('bet') or data.get('game') or data.get('result')
    return ActionResult(
        kind=kind,
        ok=ok,
        error=None if ok else (data.get('error') or data.get('message') or 'rejected'),
        action_id=data.get('actionId'),
        round_id=_round_id_of(data) if mode.round_ref != 'asset' else data.get('roundId'),
        user=data.get('wallet'),
        result=result if isinstance(result, dict) else None,
    )


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append('_')
            out.append(ch.lower())
        else:
            out.append(ch)
    return ''.join(out).lstrip('_')


def decode(mode: GameMode, key: Optional[str], name: str, data: Any) -> List[Any]:
    """Decode one raw channel message for the topic ``(mode, key)``."""
    if name == PRICE_EVENT and isinstance(data, dict):
        return [PriceSample(series=series, value=float(data[symbol]))
                for series, symbol in mode.price_symbols(key)
                if isinstance(data.get(symbol), (int, float))]
    if name == READY_CHECK_EVENT and mode.name == 'scheduled' and isinstance(data, dict):
        match_id = data.get('matchId')
        if match_id is None or (key is not None and str(match_id) != key) or data.get('expiresAt') is None:
            return []
        return [ReadyCheckOpened(match_id=str(match_id), expires_at=int(data['expiresAt']))]
    if name == MATCH_LIST_EVENT and mode.name == 'scheduled' and isinstance(data, list):
        for match in data:
            if isinstance(match, dict) and str(match.get('id')) == key:
                event = _decode_state(mode, key, name, match)
                return [event] if event else []
        return []
    if name in mode.ack_events:
        ack = _decode_ack(mode, key, name, data)
        return [ack] if ack else []
    if not isinstance(data, dict):
        return []
    if name in mode.state_events:
        event = _decode_state(mode, key, name, data)
        return [event] if event else []
    if name == mode.event_name:
        return _decode_incremental(mode, key, data)
    return []


def channel_event_names(mode: GameMode) -> List[str]:
    """Every raw event name a topic of ``mode`` listens to."""
    names = [PRICE_EVENT]
    if mode.event_name:
        names.append(mode.event_name)
    names.extend(mode.state_events)
    names.extend(mode.ack_events)
    if mode.name == 'scheduled':
        names.extend((READY_CHECK_EVENT, MATCH_LIST_EVENT))
    return names
