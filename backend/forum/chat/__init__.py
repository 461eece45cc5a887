"""Real-time chat: connection hub, message routing and presence."""
