"""Conversation state machine, stream rendering and host integration."""
