"""Messaging core: encrypted message storage, conversations and the facade."""
