#!/usr/bin/env python3
"""
Server-Sent-Events filtering for streamed LM Studio responses.

filter_chunk() patches a single "data: {...}" event. SseEventBuffer cuts the
raw upstream byte stream into whole events first, since network chunks do not
line up with event boundaries.
"""

import json
import logging
from typing import Optional

from .payload import complete_usage, encode_json

logger = logging.getLogger('lmstudio-proxy').getChild('sse')

DATA_PREFIX = 'data: '
DONE_MARKER = '[DONE]'

# Blank lines that end an SSE event (LF, CRLF and bare CR line endings)
EVENT_TERMINATORS = (b'\r\n\r\n', b'\n\n', b'\r\r')

# Past this many buffered bytes without a terminator, bytes pass through as-is
MAX_EVENT_SIZE = 1024 * 1024


def filter_chunk(chunk: bytes) -> bytes:
    """Fill in response.usage token details in one SSE event.

    Anything that is not a decodable "data: <json>" event comes back unchanged,
    as does an event that needed no fix (byte-for-byte, no re-encoding).
    """
    try:
        text = chunk.decode('utf-8')
    except UnicodeDecodeError:
        return chunk

    if not text.startswith(DATA_PREFIX):
        return chunk

    payload = text[len(DATA_PREFIX):].strip()
    if payload == DONE_MARKER:
        return chunk

    try:
        data = json.loads(payload)
    except (ValueError, RecursionError):
        return chunk

    # Responses API streaming nests usage under "response"
    if not isinstance(data, dict):
        return chunk
    response = data.get('response')
    if not isinstance(response, dict) or 'usage' not in response:
        return chunk
    usage = complete_usage(response['usage'])
    if usage is response['usage']:
        return chunk

    fixed = {**data, 'response': {**response, 'usage': usage}}
    try:
        encoded = encode_json(fixed)
    except ValueError:
        return chunk
    logger.debug("Fixed usage details in stream event")
    return b'data: ' + encoded + event_terminator(chunk)


def event_terminator(chunk: bytes) -> bytes:
    """The blank line that ended this event, defaulting to LF."""
    for terminator in EVENT_TERMINATORS:
        if chunk.endswith(terminator):
            return terminator
    return b'\n\n'


class SseEventBuffer:
    """Re-chunk an SSE byte stream on blank-line boundaries.

    Each complete event is passed through filter_chunk(); partial events stay
    buffered until the rest arrives.
    """

    def __init__(self, max_event_size: int = MAX_EVENT_SIZE):
        self.buffer = b''
        self.max_event_size = max_event_size

    def feed(self, chunk: bytes) -> bytes:
        """Add raw bytes, return the filtered bytes of every completed event."""
        self.buffer += chunk
        output = []

        while True:
            end_pos = self._event_end()
            if end_pos is None:
                break
            event_data = self.buffer[:end_pos]
            self.buffer = self.buffer[end_pos:]
            output.append(self._filter_event(event_data))

        if len(self.buffer) > self.max_event_size:
            logger.warning(f"No event boundary in {len(self.buffer)} bytes, passing through")
            output.append(self.buffer)
            self.buffer = b''

        return b''.join(output)

    def flush(self) -> bytes:
        """Return whatever is left at end of stream, unmodified."""
        remaining = self.buffer
        self.buffer = b''
        return remaining

    def _event_end(self) -> Optional[int]:
        best = None
        for terminator in EVENT_TERMINATORS:
            pos = self.buffer.find(terminator)
            if pos >= 0 and (best is None or pos + len(terminator) < best):
                best = pos + len(terminator)
        return best

    def _filter_event(self, event_data: bytes) -> bytes:
        try:
            return filter_chunk(event_data)
        except Exception as e:
            logger.warning(f"SSE filter failed, passing event through: {e}")
            return event_data
