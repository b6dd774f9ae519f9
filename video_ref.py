import re

INVALID_REFERENCE_MESSAGE = 'Please enter a valid YouTube URL or video ID'

# First match wins.
PATTERNS = [
    re.compile(r'(?:youtube\.com/watch\?v=)([A-Za-z0-9_-]{11})'),
    re.compile(r'(?:youtu\.be/)([A-Za-z0-9_-]{11})'),
    re.compile(r'(?:youtube\.com/embed/)([A-Za-z0-9_-]{11})'),
    re.compile(r'(?:youtube\.com/v/)([A-Za-z0-9_-]{11})'),
    re.compile(r'(?:youtube\.com/watch\?.*&v=)([A-Za-z0-9_-]{11})'),
]
BARE_ID = re.compile(r'[A-Za-z0-9_-]{11}')


class InvalidVideoReference(ValueError):
    def __init__(self, raw: str):
        super().__init__(INVALID_REFERENCE_MESSAGE)
        self.raw = raw
        self.user_message = INVALID_REFERENCE_MESSAGE


def extract_video_ref(raw: str) -> str:
    """Resolve a pasted link or id to the canonical 11-character video id."""
    for pattern in PATTERNS:
        match = pattern.search(raw)
        if match:
            return match.group(1)
    candidate = raw.strip()
    if BARE_ID.fullmatch(candidate):
        return candidate
    raise InvalidVideoReference(raw)
