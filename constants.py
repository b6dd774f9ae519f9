import os

from dotenv import load_dotenv

load_dotenv()

RELAY_HOST = os.getenv('RELAY_HOST', '0.0.0.0')
RELAY_PORT = int(os.getenv('RELAY_PORT', 4000))
RELAY_URL = os.getenv('RELAY_URL', f'ws://localhost:{RELAY_PORT}')

STUN_SERVERS = [
    url.strip() for url in
    os.getenv('STUN_SERVERS', 'stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302').split(',')
    if url.strip()
]

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FILE = os.getenv('LOG_FILE', None)

# Peer links
PEER_RECONNECT_DELAY = 2.0      # seconds between a link failure and its retry
DATA_CHANNEL_LABEL = 'sync'

# Playback sync
DRIFT_TOLERANCE = 2.0           # seconds of drift tolerated before seeking
SEEK_SUPPRESSION = 0.5          # echo window after a seek/play/pause correction
LOAD_SUPPRESSION = 1.0          # echo window after a video load
REPORT_INTERVAL = 1.0           # min seconds between relay reports
HEARTBEAT_INTERVAL = 5.0        # peer heartbeat period while playing
