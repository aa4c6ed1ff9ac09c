"""MCP stdio server exposing the listing sync engine as tools."""
