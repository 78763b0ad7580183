"""Chatsphere: real-time room-scoped message relay."""
