from roundmirror.services.rounds.hub import backoff_delays, hub


def _prediction_payload(now):
    return {'roundId': 'r1', 'phase': 'betting',
            'deadlines': {'betting': now + 5000, 'locked': now + 65000},
            'pools': {'up': 10, 'down': 30}, 'priceAnchors': {'start': 100.0}}


def test_health(client):
    res = client.get('/health')
    assert res.status_code == 200
    assert res.get_json()['status'] == 'ok'


def test_subscribe_fetches_snapshot_and_subscribes_backend(client, fake_snapshots, fake_channel, clock):
    fake_snapshots.put('prediction:SOL', _prediction_payload(clock.now_ms()))
    res = client.post('/api/rounds/prediction:SOL/subscribe')
    assert res.status_code == 201
    view = res.get_json()
    assert view['round']['round_id'] == 'r1'
    assert view['timer']['remaining_ms'] == 5000
    assert ('subscribe_prediction', ['SOL']) in fake_channel.subscriptions
    assert ('subscribe_prices', [['SOL']]) in fake_channel.subscriptions
    assert fake_channel.listener_count('prediction_event') == 1


def test_unknown_or_unsubscribed_topic(client):
    assert client.post('/api/rounds/poker/subscribe').status_code == 404
    assert client.get('/api/rounds/poker/state').status_code == 404
    res = client.get('/api/rounds/lds/state')
    assert res.status_code == 404
    assert 'not subscribed' in res.get_json()['error']


def test_actions_single_flight(client, fake_snapshots, fake_channel, clock):
    fake_snapshots.put('prediction:SOL', _prediction_payload(clock.now_ms()))
    client.post('/api/rounds/prediction:SOL/subscribe')
    body = {'wallet': 'W1', 'kind': 'bet', 'payload': {'side': 'up', 'amount': 1}}
    res = client.post('/api/rounds/prediction:SOL/actions', json=body)
    assert res.status_code == 202
    assert res.get_json()['status'] == 'submitting'
    res = client.post('/api/rounds/prediction:SOL/actions', json=body)
    assert res.status_code == 409
    assert [name for name, _ in fake_channel.sent] == ['place_prediction_bet']

    assert client.post('/api/rounds/prediction:SOL/actions', json={'wallet': 'W2', 'kind': 'join'}).status_code == 400
    assert client.post('/api/rounds/prediction:SOL/actions', json={'kind': 'bet'}).status_code == 400


def test_confirmed_action_acknowledged(client, fake_snapshots, fake_channel, clock):
    fake_snapshots.put('prediction:SOL', _prediction_payload(clock.now_ms()))
    client.post('/api/rounds/prediction:SOL/subscribe')
    action = client.post('/api/rounds/prediction:SOL/actions',
                         json={'wallet': 'W1', 'kind': 'bet', 'payload': {'side': 'up'}}).get_json()
    fake_channel.push('prediction_bet_result', {'success': True, 'actionId': action['action_id']})
    state = client.get('/api/rounds/prediction:SOL/state?wallet=W1').get_json()
    assert state['action']['status'] == 'confirmed'
    res = client.post('/api/rounds/prediction:SOL/actions/acknowledge', json={'wallet': 'W1'})
    assert res.get_json() == {'acknowledged': True}
    state = client.get('/api/rounds/prediction:SOL/state?wallet=W1').get_json()
    assert state['action'] == {'status': 'idle'}


def test_odds_are_estimates(client, fake_snapshots, clock):
    fake_snapshots.put('prediction:SOL', _prediction_payload(clock.now_ms()))
    client.post('/api/rounds/prediction:SOL/subscribe')
    res = client.get('/api/rounds/prediction:SOL/odds?side=up')
    assert res.status_code == 200
    quote = res.get_json()
    assert quote['estimated'] is True
    assert quote['odds'] == 3.85
    assert client.get('/api/rounds/prediction:SOL/odds').status_code == 400


def test_ready_check_http(client, fake_snapshots, fake_channel, clock):
    fake_snapshots.put('scheduled:m1', {'roundId': 'm1', 'phase': 'starting'})
    client.post('/api/rounds/scheduled:m1/subscribe')
    assert ('subscribe_scheduled_matches', ['battle']) in fake_channel.subscriptions

    res = client.post('/api/rounds/scheduled:m1/ready', json={'wallet': 'W1', 'ready': True})
    assert res.status_code == 409

    fake_channel.push('scheduled_ready_check', {'matchId': 'm1', 'expiresAt': clock.now_ms() + 30000})
    res = client.post('/api/rounds/scheduled:m1/ready', json={'wallet': 'W1', 'ready': True})
    assert res.status_code == 200
    assert res.get_json() == {'status': 'ready'}
    assert client.post('/api/rounds/scheduled:m1/ready', json={'wallet': 'W1', 'ready': False}).status_code == 409

    clock.advance(30000)
    res = client.post('/api/rounds/scheduled:m1/ready', json={'wallet': 'W2', 'ready': True})
    assert res.status_code == 410
    assert res.get_json()['status'] == 'not_ready'
    assert client.post('/api/rounds/scheduled:m1/ready', json={'wallet': 'W3'}).status_code == 400


def test_ready_response_cannot_go_through_actions(client, fake_snapshots, fake_channel, clock):
    fake_snapshots.put('scheduled:m1', {'roundId': 'm1', 'phase': 'starting'})
    client.post('/api/rounds/scheduled:m1/subscribe')
    body = {'wallet': 'W1', 'kind': 'ready_response', 'payload': {'ready': True}}
    assert client.post('/api/rounds/scheduled:m1/actions', json=body).status_code == 400

    fake_channel.push('scheduled_ready_check', {'matchId': 'm1', 'expiresAt': clock.now_ms() + 30000})
    clock.advance(30001)
    assert client.post('/api/rounds/scheduled:m1/ready', json={'wallet': 'W1', 'ready': True}).status_code == 410
    assert client.post('/api/rounds/scheduled:m1/actions', json=body).status_code == 400
    assert fake_channel.sent == []


def test_failed_snapshot_marks_stale_and_queues_events(client, fake_snapshots, fake_channel):
    res = client.post('/api/rounds/lds/subscribe')
    assert res.status_code == 201
    view = res.get_json()
    assert view['round'] is None
    assert view['stale'] is True

    fake_channel.push('lds_event', {'type': 'player_joined', 'data': {'gameId': 'g1', 'walletAddress': 'W1'}})
    diag = client.get('/api/rounds/lds/diagnostics').get_json()
    assert diag['queued'] == 1
    assert diag['awaiting_snapshot'] is True

    fake_snapshots.put('lds', {'roundId': 'g1', 'phase': 'registering'})
    client.post('/api/rounds/lds/resync')
    state = client.get('/api/rounds/lds/state').get_json()
    assert state['stale'] is False
    assert [p['wallet'] for p in state['round']['participants']] == ['W1']


def test_reconnect_resubscribes_and_resyncs(client, fake_snapshots, fake_channel):
    fake_snapshots.put('token_wars', {'roundId': 'b1', 'phase': 'betting'})
    client.post('/api/rounds/token_wars/subscribe')
    assert fake_snapshots.calls == ['token_wars']

    fake_channel.drop()
    assert client.get('/api/rounds/token_wars/state').get_json()['stale'] is True
    fake_snapshots.put('token_wars', {'roundId': 'b1', 'phase': 'in_progress'})
    fake_channel.restore()
    assert fake_snapshots.calls == ['token_wars', 'token_wars']
    assert fake_channel.subscriptions.count(('subscribe_token_wars', [])) == 2
    state = client.get('/api/rounds/token_wars/state').get_json()
    assert state['round']['phase'] == 'in_progress'
    assert state['stale'] is False


def test_unsubscribe_is_reference_counted(client, fake_snapshots, fake_channel):
    fake_snapshots.put('lds', {'roundId': 'g1', 'phase': 'registering'})
    client.post('/api/rounds/lds/subscribe')
    client.post('/api/rounds/lds/subscribe')
    assert client.post('/api/rounds/lds/unsubscribe').get_json()['released'] is False
    assert hub.get('lds') is not None
    assert client.post('/api/rounds/lds/unsubscribe').get_json()['released'] is True
    assert hub.get('lds') is None
    assert ('unsubscribe_lds', []) in fake_channel.subscriptions
    assert fake_channel.listener_count('lds_event') == 0


def test_backoff_doubles_to_cap():
    delays = backoff_delays(500, 10000)
    assert [next(delays) for _ in range(7)] == [500, 1000, 2000, 4000, 8000, 10000, 10000]


def test_fetch_snapshot_cli(flask_app, fake_snapshots):
    fake_snapshots.put('lds', {'roundId': 'g1', 'phase': 'registering'})
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=['fetch-snapshot', 'lds'])
    assert result.exit_code == 0
    assert '"round_id": "g1"' in result.output
    result = runner.invoke(args=['fetch-snapshot', 'poker'])
    assert result.exit_code != 0
