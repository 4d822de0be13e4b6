import os

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    # Backend that owns the rounds (snapshots over HTTP, push events over Socket.IO)
    BACKEND_URL = os.environ.get('BACKEND_URL') or 'http://localhost:3001'
    BACKEND_TOKEN = os.environ.get('BACKEND_TOKEN')
    SNAPSHOT_TIMEOUT_SEC = float(os.environ.get('SNAPSHOT_TIMEOUT_SEC', '5'))
    # Snapshot retry backoff (ms): base doubles per failure up to max
    SNAPSHOT_RETRY_BASE_MS = int(os.environ.get('SNAPSHOT_RETRY_BASE_MS', '500'))
    SNAPSHOT_RETRY_MAX_MS = int(os.environ.get('SNAPSHOT_RETRY_MAX_MS', '10000'))
    CHANNEL_RECONNECT_ATTEMPTS = int(os.environ.get('CHANNEL_RECONNECT_ATTEMPTS', '5'))
    CHANNEL_RECONNECT_DELAY_SEC = float(os.environ.get('CHANNEL_RECONNECT_DELAY_SEC', '1'))
    # Countdown ticks (ms). Digit counters use the coarser interval.
    TICK_INTERVAL_MS = int(os.environ.get('TICK_INTERVAL_MS', '100'))
    DIGIT_TICK_INTERVAL_MS = int(os.environ.get('DIGIT_TICK_INTERVAL_MS', '1000'))
    # Price easing window (ms); REDUCED_MOTION snaps prices instead
    PRICE_INTERPOLATION_MS = int(os.environ.get('PRICE_INTERPOLATION_MS', '150'))
    REDUCED_MOTION = os.environ.get('REDUCED_MOTION', 'false').lower() == 'true'
    # Optimistic actions
    ACTION_TIMEOUT_MS = int(os.environ.get('ACTION_TIMEOUT_MS', '10000'))
    ACTION_ERROR_DISPLAY_MS = int(os.environ.get('ACTION_ERROR_DISPLAY_MS', '5000'))
    # Reconciler is flagged stale when nothing applied for this long (ms)
    STALE_AFTER_MS = int(os.environ.get('STALE_AFTER_MS', '15000'))
    RESYNC_QUEUE_MAX = int(os.environ.get('RESYNC_QUEUE_MAX', '1000'))
    # Comma separated topics subscribed on startup, e.g. "lds,token_wars,prediction:SOL"
    AUTO_SUBSCRIBE_TOPICS = [t.strip() for t in os.environ.get('AUTO_SUBSCRIBE_TOPICS', '').split(',') if t.strip()]
