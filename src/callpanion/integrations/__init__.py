"""External provider integrations (push gateways, conversational AI)."""
