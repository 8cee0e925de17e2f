"""Payload, SSE and header helpers for the LM Studio proxy."""
