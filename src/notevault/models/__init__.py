"""Data models for NoteVault."""
