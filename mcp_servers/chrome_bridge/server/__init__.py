"""MCP-facing pieces of the relay: tool contract, result rendering, log redaction."""
