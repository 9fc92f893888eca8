"""
mcp-bridge test suite

Structure:
- unit/: Unit tests for individual components (config, transport, supervisor,
  client registry, schema bridge, service, HTTP API, CLI)
"""
