"""Conversation service HTTP app."""
