#!/usr/bin/env python3
"""
Test suite for SSE stream filtering (lib/sse_filter.py).

Run with: python3 -m pytest tests/ -v
"""

import json
import sys
from pathlib import Path

PROXY_DIR = Path(__file__).parent.parent / 'proxy'
sys.path.insert(0, str(PROXY_DIR))

from lib.sse_filter import SseEventBuffer, filter_chunk


def event(payload) -> bytes:
    """Build a single 'data:' SSE event."""
    if not isinstance(payload, str):
        payload = json.dumps(payload)
    return f'data: {payload}\n\n'.encode('utf-8')


def parse_event(chunk: bytes) -> dict:
    text = chunk.decode('utf-8')
    assert text.startswith('data: ')
    assert text.endswith('\n\n')
    return json.loads(text[len('data: '):])


class TestFilterChunk:
    """Test patching of a single SSE event."""

    def test_done_marker_unchanged(self):
        """[DONE] passes through byte-for-byte."""
        chunk = b'data: [DONE]\n\n'
        assert filter_chunk(chunk) is chunk

    def test_response_usage_completed(self):
        """response.usage gets both token detail blocks, framing intact."""
        chunk = b'data: {"response":{"usage":{}}}\n\n'
        result = filter_chunk(chunk)

        assert result.startswith(b'data: ')
        assert result.endswith(b'\n\n')
        usage = parse_event(result)['response']['usage']
        assert usage['input_tokens_details'] == {'cached_tokens': 0}
        assert usage['output_tokens_details'] == {'reasoning_tokens': 0}

    def test_other_fields_kept(self):
        """Everything around the usage block survives the rewrite."""
        data = {
            'type': 'response.completed',
            'sequence_number': 12,
            'response': {'id': 'resp_9', 'status': 'completed',
                         'usage': {'input_tokens': 10, 'output_tokens': 3,
                                   'output_tokens_details': {'reasoning_tokens': 2}}},
        }
        result = parse_event(filter_chunk(event(data)))

        assert result['type'] == 'response.completed'
        assert result['response']['id'] == 'resp_9'
        usage = result['response']['usage']
        assert usage['input_tokens'] == 10
        assert usage['output_tokens_details'] == {'reasoning_tokens': 2}
        assert usage['input_tokens_details'] == {'cached_tokens': 0}

    def test_complete_usage_unchanged(self):
        """No insertion means the original bytes come back."""
        chunk = event({'response': {'usage': {
            'input_tokens_details': {'cached_tokens': 0},
            'output_tokens_details': {'reasoning_tokens': 0},
        }}})
        assert filter_chunk(chunk) is chunk

    def test_top_level_usage_not_touched(self):
        """Only the nested response.usage path is patched in streams."""
        chunk = event({'choices': [], 'usage': {'prompt_tokens': 1}})
        assert filter_chunk(chunk) is chunk

    def test_non_data_lines_unchanged(self):
        """Comments, event names, ids and keep-alives pass through."""
        for chunk in [b': keep-alive\n\n', b'event: response.created\n\n',
                      b'id: 4\n\n', b'\n\n', b'retry: 1000\n\n']:
            assert filter_chunk(chunk) is chunk

    def test_event_line_first_unchanged(self):
        """An event that starts with 'event:' is not a data frame."""
        chunk = b'event: response.completed\ndata: {"response":{"usage":{}}}\n\n'
        assert filter_chunk(chunk) is chunk

    def test_invalid_json_unchanged(self):
        """Broken JSON in a data line is forwarded as-is."""
        chunk = b'data: {"response": {"usage": \n\n'
        assert filter_chunk(chunk) is chunk

    def test_undecodable_unchanged(self):
        """Non-UTF-8 bytes are forwarded as-is."""
        chunk = b'data: \xff\xfe\n\n'
        assert filter_chunk(chunk) is chunk

    def test_non_object_payloads_unchanged(self):
        """JSON scalars, arrays and a non-object response are left alone."""
        for chunk in [event('42'), event('[1, 2]'), event({'response': 'x'}),
                      event({'response': {'usage': None}})]:
            assert filter_chunk(chunk) is chunk

    def test_idempotent(self):
        """Filtering an already fixed event returns it unchanged."""
        once = filter_chunk(b'data: {"response":{"usage":{}}}\n\n')
        assert filter_chunk(once) is once


class TestSseEventBuffer:
    """Test re-chunking of the raw stream on event boundaries."""

    def test_event_split_across_chunks(self):
        """An event cut in two is reassembled before filtering."""
        buf = SseEventBuffer()
        raw = b'data: {"response":{"usage":{}}}\n\n'

        assert buf.feed(raw[:15]) == b''
        out = buf.feed(raw[15:])

        usage = parse_event(out)['response']['usage']
        assert 'input_tokens_details' in usage
        assert 'output_tokens_details' in usage

    def test_multiple_events_in_one_chunk(self):
        """Each event in a coalesced chunk is filtered on its own."""
        buf = SseEventBuffer()
        raw = (b'data: {"response":{"usage":{}}}\n\n'
               b'data: {"delta":"hi"}\n\n'
               b'data: [DONE]\n\n')
        out = buf.feed(raw)

        parts = out.split(b'\n\n')
        assert parts[-1] == b''
        assert 'input_tokens_details' in parts[0].decode()
        assert parts[1] == b'data: {"delta":"hi"}'
        assert parts[2] == b'data: [DONE]'

    def test_passthrough_is_byte_identical(self):
        """A stream with nothing to fix comes out exactly as it went in."""
        raw = (b': ping\n\n'
               b'event: response.output_text.delta\ndata: {"delta": "a"}\n\n'
               b'data: {"choices": [{"delta": {"content": "b"}}]}\n\n'
               b'data: [DONE]\n\n')
        buf = SseEventBuffer()
        out = b''.join(buf.feed(raw[i:i + 7]) for i in range(0, len(raw), 7))
        out += buf.flush()
        assert out == raw

    def test_crlf_delimiters(self):
        """Events terminated by CRLF blank lines are recognised."""
        buf = SseEventBuffer()
        out = buf.feed(b'data: {"response":{"usage":{}}}\r\n\r\ndata: [DONE]\r\n\r\n')

        assert b'input_tokens_details' in out
        assert out.endswith(b'data: [DONE]\r\n\r\n')

    def test_crlf_terminator_kept_on_patched_event(self):
        """A rewritten event ends with the same blank line it arrived with."""
        out = filter_chunk(b'data: {"response":{"usage":{}}}\r\n\r\n')
        assert out.endswith(b'}\r\n\r\n')
        assert b'input_tokens_details' in out

    def test_bare_cr_delimiters(self):
        """Streams using bare CR line endings are split as they arrive."""
        buf = SseEventBuffer()
        out = buf.feed(b'data: {"response":{"usage":{}}}\r\r')

        assert out.startswith(b'data: {')
        assert out.endswith(b'}\r\r')
        assert b'output_tokens_details' in out
        assert buf.feed(b'data: [DONE]\r\r') == b'data: [DONE]\r\r'
        assert buf.flush() == b''

    def test_oversized_partial_event_passed_through(self):
        """Bytes without any event boundary are released once past the limit."""
        buf = SseEventBuffer(max_event_size=16)
        assert buf.feed(b'data: {"delta"') == b''
        assert buf.feed(b': "abcdefgh"}') == b'data: {"delta": "abcdefgh"}'
        assert buf.feed(b'\n\ndata: [DONE]\n\n') == b'\n\ndata: [DONE]\n\n'

    def test_flush_returns_partial_tail(self):
        """Bytes after the last blank line are flushed unmodified."""
        buf = SseEventBuffer()
        assert buf.feed(b'data: {"response":{"usage":{}}}') == b''
        assert buf.flush() == b'data: {"response":{"usage":{}}}'
        assert buf.flush() == b''

    def test_filter_error_passes_event(self, monkeypatch):
        """An exception inside the filter forwards the original event."""
        import lib.sse_filter as sse_filter

        def broken(chunk):
            raise RuntimeError("boom")

        monkeypatch.setattr(sse_filter, 'filter_chunk', broken)
        buf = SseEventBuffer()
        raw = b'data: {"response":{"usage":{}}}\n\n'
        assert buf.feed(raw) == raw


if __name__ == '__main__':
    import pytest
    sys.exit(pytest.main([__file__, '-v'] + sys.argv[1:]))
