"""Job names, validated payloads and the handlers that bind them to engines."""
