from roundmirror.models import RoundRecord
from roundmirror.services.rounds.events import (
    ActionResult,
    PriceSample,
    ReadyCheckOpened,
    RoundEvent,
    channel_event_names,
    decode,
)
from roundmirror.services.rounds.modes import MODES, parse_topic
from roundmirror.services.rounds.reconciler import StateReconciler

import pytest
from roundmirror.services.rounds.errors import UnknownTopic


def test_parse_topic():
    mode, key = parse_topic('prediction:SOL')
    assert (mode.name, key) == ('prediction', 'SOL')
    mode, key = parse_topic('lds')
    assert (mode.name, key) == ('lds', None)
    with pytest.raises(UnknownTopic):
        parse_topic('poker')
    with pytest.raises(UnknownTopic):
        parse_topic('scheduled')


def test_prediction_round_push_becomes_round_created():
    data = {'id': 'r7', 'asset': 'SOL', 'status': 'betting', 'lockTime': 5000, 'endTime': 65000,
            'upPool': 3, 'downPool': 4, 'startPrice': 101.5, 'startTime': 0}
    [event] = decode(MODES['prediction'], 'SOL', 'prediction_round', data)
    assert isinstance(event, RoundEvent)
    assert event.created
    assert (event.round_id, event.phase) == ('r7', 'betting')
    assert event.patch['deadlines'] == {'betting': 5000, 'locked': 65000}
    assert event.patch['pools'] == {'up': 3.0, 'down': 4.0}
    assert event.patch['price_anchors'] == {'start': 101.5}
    assert event.patch['extra'] == {'startTime': 0}


def test_other_asset_is_filtered_out():
    mode = MODES['prediction']
    assert decode(mode, 'SOL', 'prediction_round', {'id': 'r1', 'asset': 'BTC', 'status': 'betting'}) == []
    assert decode(mode, 'SOL', 'prediction_event',
                  {'type': 'round_locked', 'data': {'roundId': 'r1', 'asset': 'BTC'}}) == []


def test_incremental_type_maps_to_phase():
    mode = MODES['token_wars']
    [ended] = decode(mode, None, 'token_wars_event', {'type': 'battle_ended', 'data': {'battleId': 'b1'}})
    [paid] = decode(mode, None, 'token_wars_event', {'type': 'payout_processed', 'data': {'battleId': 'b1'}})
    assert (ended.round_id, ended.phase) == ('b1', 'cooldown')
    assert paid.phase == 'completed'


def test_per_cycle_result_stays_out_of_result():
    [event] = decode(MODES['lds'], None, 'lds_event',
                     {'type': 'round_resolved', 'data': {'gameId': 'g1', 'roundNumber': 2, 'winner': 'up'}})
    assert event.phase == 'resolving'
    assert event.sequence == 2
    assert 'result' not in event.patch
    assert event.patch['extra']['last_result'] == 'up'


def test_duplicate_join_does_not_duplicate_participant(clock):
    mode = MODES['lds']
    reconciler = StateReconciler(mode, clock)
    reconciler.apply_snapshot(RoundRecord(round_id='g1', phase='registering'))
    joined = {'type': 'player_joined', 'data': {'gameId': 'g1', 'walletAddress': 'W1', 'playerCount': 1}}
    for _ in range(2):
        for event in decode(mode, None, 'lds_event', joined):
            reconciler.apply_event(event)
    record = reconciler.record
    assert [p.wallet for p in record.participants] == ['W1']
    assert record.extra['playerCount'] == 1

    [eliminated] = decode(mode, None, 'lds_event',
                          {'type': 'player_eliminated', 'data': {'gameId': 'g1', 'walletAddress': 'W1'}})
    reconciler.apply_event(eliminated)
    assert reconciler.record.participant('W1').status == 'eliminated'


def test_acks_decode_to_action_results():
    [ok] = decode(MODES['token_wars'], None, 'token_wars_bet_success',
                  {'battleId': 'b1', 'actionId': 'a1', 'bet': {'odds': 1.7}})
    assert ok == ActionResult(kind='bet', ok=True, action_id='a1', round_id='b1', result={'odds': 1.7})
    [err] = decode(MODES['lds'], None, 'lds_join_error', 'Game is full')
    assert (err.kind, err.ok, err.error) == ('join', False, 'Game is full')
    [pred] = decode(MODES['prediction'], 'SOL', 'prediction_bet_result', {'success': False, 'error': 'Round locked'})
    assert (pred.ok, pred.error) == (False, 'Round locked')


def test_price_samples():
    assert decode(MODES['prediction'], 'SOL', 'price_update', {'SOL': 101.5, 'BTC': 1}) == \
        [PriceSample(series='price', value=101.5)]
    assert decode(MODES['token_wars'], None, 'price_update', {'SOL': 1}) == []
    samples = decode(MODES['token_wars'], None, 'token_wars_event',
                     {'type': 'price_update', 'data': {'tokenA': 2.5, 'tokenB': {'price': 3.0}}})
    assert samples == [PriceSample('token_a', 2.5), PriceSample('token_b', 3.0)]


def test_ready_check_only_for_own_match():
    mode = MODES['scheduled']
    assert decode(mode, 'm1', 'scheduled_ready_check', {'matchId': 'm1', 'expiresAt': 9000}) == \
        [ReadyCheckOpened(match_id='m1', expires_at=9000)]
    assert decode(mode, 'm1', 'scheduled_ready_check', {'matchId': 'm2', 'expiresAt': 9000}) == []
    assert 'scheduled_ready_check' in channel_event_names(mode)
    assert 'scheduled_ready_check' not in channel_event_names(MODES['lds'])


def test_match_list_picks_own_match():
    mode = MODES['scheduled']
    matches = [
        {'id': 'm0', 'status': 'upcoming', 'registeredPlayers': []},
        {'id': 'm1', 'status': 'registration_open', 'registeredPlayers': ['W1', 'W2'],
         'confirmedPlayers': ['W2']},
    ]
    [event] = decode(mode, 'm1', 'scheduled_matches_list', matches)
    assert (event.round_id, event.phase) == ('m1', 'registration_open')
    assert [(p.wallet, p.status) for p in event.patch['participants']] == \
        [('W1', 'registered'), ('W2', 'confirmed')]


def test_build_action_carries_correlation():
    event, data = MODES['prediction'].build_action('bet', 'SOL', 'r1', 'W1', {'side': 'up'}, 'a1')
    assert event == 'place_prediction_bet'
    assert data == {'side': 'up', 'wallet': 'W1', 'actionId': 'a1', 'roundId': 'r1', 'asset': 'SOL'}
    event, data = MODES['lds'].build_action('join', None, 'g1', 'W1', {}, 'a2')
    assert (event, data['gameId']) == ('lds_join_game', 'g1')
    with pytest.raises(ValueError):
        MODES['token_wars'].build_action('join', None, 'b1', 'W1', {}, 'a3')
