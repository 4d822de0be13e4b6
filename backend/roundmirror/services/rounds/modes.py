"""Game-mode registry.

Every round-based mode shares the same reconciliation rules; what differs is
the phase order, the backend's native field names and the Socket.IO event
names. Each mode is described once here and everything else is generic.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from .errors import UnknownTopic


def _pick(data: Dict[str, Any], *keys):
    for k in keys:
        if data.get(k) is not None:
            return data[k]
    return None


def _compact(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


def _canonical(data: Dict[str, Any]) -> bool:
    return 'roundId' in data


# ---- Native payload normalizers (backend shapes -> canonical wire keys) ----

def _normalize_prediction(data: Dict[str, Any]) -> Dict[str, Any]:
    if _canonical(data):
        return dict(data)
    rnd = data.get('round') or data
    out = {
        'roundId': _pick(rnd, 'id', 'roundId'),
        'phase': _pick(rnd, 'status', 'phase'),
        'deadlines': _compact({'betting': rnd.get('lockTime'), 'locked': rnd.get('endTime')}),
        'pools': _compact({'up': rnd.get('upPool'), 'down': rnd.get('downPool')}),
        'priceAnchors': _compact({'start': rnd.get('startPrice'), 'end': rnd.get('endPrice')}),
        'result': rnd.get('winner'),
    }
    if rnd.get('startTime') is not None:
        out['startTime'] = rnd['startTime']
    return _compact(out)


def _normalize_lds(data: Dict[str, Any]) -> Dict[str, Any]:
    if _canonical(data):
        return dict(data)
    game = data.get('game') or {}
    current = data.get('currentRound') or {}
    out = {
        'roundId': _pick(game, 'id') or data.get('gameId'),
        'phase': data.get('phase'),
        'sequence': _pick(game, 'currentRound') or current.get('roundNumber'),
        'deadlines': _compact({
            'registering': game.get('scheduledStartTime'),
            'predicting': current.get('predictionDeadline'),
        }),
        'pools': _compact({'prize': game.get('prizePoolLamports')}),
        'priceAnchors': _compact({'start': current.get('startPrice'), 'end': current.get('endPrice')}),
    }
    if 'players' in data:
        out['participants'] = [
            _compact({
                'wallet': p.get('walletAddress') or p.get('wallet'),
                'status': p.get('status'),
                'joinedAt': p.get('joinedAt'),
            })
            for p in data.get('players') or []
        ]
    if data.get('alivePlayers') is not None:
        out['alivePlayers'] = data['alivePlayers']
    return _compact(out)


def _normalize_token_wars(data: Dict[str, Any]) -> Dict[str, Any]:
    if _canonical(data):
        return dict(data)
    battle = data.get('battle') or data
    out = {
        'roundId': _pick(battle, 'id', 'battleId'),
        'phase': data.get('phase'),
        'deadlines': _compact({
            'betting': battle.get('bettingEndTime'),
            'in_progress': battle.get('battleEndTime'),
        }),
        'pools': _compact({
            'token_a': battle.get('totalBetsTokenA'),
            'token_b': battle.get('totalBetsTokenB'),
        }),
        'priceAnchors': _compact({
            'token_a_start': battle.get('tokenAStartPrice'),
            'token_a_end': battle.get('tokenAEndPrice'),
            'token_b_start': battle.get('tokenBStartPrice'),
            'token_b_end': battle.get('tokenBEndPrice'),
        }),
        'result': battle.get('winner'),
    }
    for key in ('tokenA', 'tokenB', 'odds'):
        if key in battle or key in data:
            out[key] = battle.get(key, data.get(key))
    return _compact(out)


def _normalize_scheduled(data: Dict[str, Any]) -> Dict[str, Any]:
    if _canonical(data):
        return dict(data)
    match = data.get('match') or data
    confirmed = set(match.get('confirmedPlayers') or [])
    out = {
        'roundId': _pick(match, 'id', 'matchId'),
        'phase': match.get('status'),
        'deadlines': _compact({
            'upcoming': match.get('registrationOpens'),
            'registration_open': match.get('registrationCloses'),
        }),
        'entryFee': match.get('entryFee'),
        'scheduledStartTime': match.get('scheduledStartTime'),
    }
    if 'registeredPlayers' in match:
        out['participants'] = [
            {'wallet': w, 'status': 'confirmed' if w in confirmed else 'registered'}
            for w in match.get('registeredPlayers') or []
        ]
    return _compact(out)


@dataclass(frozen=True)
class GameMode:
    name: str
    phases: Tuple[str, ...]
    terminal: FrozenSet[str]
    snapshot_path: str
    subscribe_event: str
    unsubscribe_event: str
    event_name: Optional[str] = None
    state_events: Tuple[str, ...] = ()
    created_types: FrozenSet[str] = frozenset()
    type_phases: Dict[str, str] = field(default_factory=dict)
    action_events: Dict[str, str] = field(default_factory=dict)
    # ack event name -> (action kind, ok); ok None means read data['success']
    ack_events: Dict[str, Tuple[str, Optional[bool]]] = field(default_factory=dict)
    round_ref: str = 'roundId'
    needs_key: bool = False
    subscribe_arg: Optional[str] = None
    normalize: Callable[[Dict[str, Any]], Dict[str, Any]] = dict
    # (series name, symbol in the global price_update feed); '{key}' is the topic key
    price_feeds: Tuple[Tuple[str, str], ...] = ()

    def rank(self, phase: Optional[str]) -> int:
        """Position of ``phase`` in the total order; terminal phases tie at the top."""
        if phase in self.terminal:
            return len(self.phases) - len(self.terminal)
        try:
            return self.phases.index(phase)
        except ValueError:
            return -1

    def is_terminal(self, phase: Optional[str]) -> bool:
        return phase in self.terminal

    def knows(self, phase: Optional[str]) -> bool:
        return phase in self.phases

    def snapshot_url(self, base_url: str, key: Optional[str]) -> str:
        return base_url.rstrip('/') + self.snapshot_path.format(key=key or '')

    def subscribe_args(self, key: Optional[str]) -> List[Any]:
        if self.subscribe_arg is not None:
            return [self.subscribe_arg]
        return [key] if self.needs_key else []

    def price_symbols(self, key: Optional[str]) -> List[Tuple[str, str]]:
        return [(series, symbol.format(key=key or '')) for series, symbol in self.price_feeds]

    def build_action(self, kind: str, key: Optional[str], round_id: str, wallet: str,
                     payload: Dict[str, Any], action_id: str) -> Tuple[str, Dict[str, Any]]:
        event = self.action_events.get(kind)
        if not event:
            raise ValueError(f"{self.name} does not support action '{kind}'")
        data = dict(payload or {})
        data.update({'wallet': wallet, 'actionId': action_id, 'roundId': round_id})
        data[self.round_ref] = key if self.round_ref == 'asset' else round_id
        return event, data


MODES: Dict[str, GameMode] = {
    'prediction': GameMode(
        name='prediction',
        phases=('betting', 'locked', 'settled', 'cancelled'),
        terminal=frozenset({'settled', 'cancelled'}),
        snapshot_path='/api/prediction/{key}/current',
        subscribe_event='subscribe_prediction',
        unsubscribe_event='unsubscribe_prediction',
        event_name='prediction_event',
        state_events=('prediction_round', 'prediction_settled'),
        created_types=frozenset({'round_created'}),
        type_phases={'round_created': 'betting', 'round_locked': 'locked', 'round_settled': 'settled'},
        action_events={'bet': 'place_prediction_bet'},
        ack_events={'prediction_bet_result': ('bet', None)},
        round_ref='asset',
        needs_key=True,
        normalize=_normalize_prediction,
        price_feeds=(('price', '{key}'),),
    ),
    'lds': GameMode(
        name='lds',
        phases=('registering', 'starting', 'predicting', 'resolving', 'completed', 'cancelled'),
        terminal=frozenset({'completed', 'cancelled'}),
        snapshot_path='/api/lds/game',
        subscribe_event='subscribe_lds',
        unsubscribe_event='unsubscribe_lds',
        event_name='lds_event',
        state_events=('lds_game_state',),
        created_types=frozenset({'game_created'}),
        type_phases={
            'game_created': 'registering',
            'game_starting': 'starting',
            'game_started': 'starting',
            'round_started': 'predicting',
            'round_resolved': 'resolving',
            'game_ended': 'completed',
            'game_cancelled': 'cancelled',
        },
        action_events={'join': 'lds_join_game', 'leave': 'lds_leave_game', 'bet': 'lds_submit_prediction'},
        ack_events={
            'lds_join_success': ('join', True),
            'lds_join_error': ('join', False),
            'lds_leave_success': ('leave', True),
            'lds_leave_error': ('leave', False),
            'lds_prediction_success': ('bet', True),
            'lds_prediction_error': ('bet', False),
        },
        round_ref='gameId',
        normalize=_normalize_lds,
        price_feeds=(('price', 'SOL'),),
    ),
    'token_wars': GameMode(
        name='token_wars',
        phases=('betting', 'in_progress', 'cooldown', 'completed', 'cancelled'),
        terminal=frozenset({'completed', 'cancelled'}),
        snapshot_path='/api/token-wars/battle',
        subscribe_event='subscribe_token_wars',
        unsubscribe_event='unsubscribe_token_wars',
        event_name='token_wars_event',
        state_events=('token_wars_battle_state',),
        created_types=frozenset({'battle_created'}),
        type_phases={
            'battle_created': 'betting',
            'betting_ended': 'in_progress',
            'battle_started': 'in_progress',
            'battle_ended': 'cooldown',
            'cooldown_started': 'cooldown',
            'payout_processed': 'completed',
        },
        action_events={'bet': 'token_wars_place_bet'},
        ack_events={
            'token_wars_bet_success': ('bet', True),
            'token_wars_bet_error': ('bet', False),
        },
        round_ref='battleId',
        normalize=_normalize_token_wars,
    ),
    'scheduled': GameMode(
        name='scheduled',
        phases=('upcoming', 'registration_open', 'starting', 'in_progress', 'completed', 'cancelled'),
        terminal=frozenset({'completed', 'cancelled'}),
        snapshot_path='/api/scheduled-matches/{key}',
        subscribe_event='subscribe_scheduled_matches',
        unsubscribe_event='unsubscribe_scheduled_matches',
        state_events=('scheduled_match_updated', 'scheduled_match_created'),
        action_events={
            'join': 'register_for_match',
            'leave': 'unregister_from_match',
            'ready_response': 'scheduled_ready_check_response',
        },
        ack_events={
            'match_registration_success': ('join', True),
            'match_registration_error': ('join', False),
            'match_unregistration_success': ('leave', True),
            'match_unregistration_error': ('leave', False),
            'scheduled_ready_check_result': ('ready_response', None),
        },
        round_ref='matchId',
        needs_key=True,
        subscribe_arg='battle',
        normalize=_normalize_scheduled,
    ),
}


def parse_topic(topic: str) -> Tuple[GameMode, Optional[str]]:
    """Split ``'prediction:SOL'`` into its mode and key."""
    name, _, key = (topic or '').partition(':')
    mode = MODES.get(name)
    if mode is None:
        raise UnknownTopic(f"unknown game mode in topic '{topic}'")
    if mode.needs_key and not key:
        raise UnknownTopic(f"topic '{topic}' needs a key, e.g. '{name}:<id>'")
    return mode, (key or None)
