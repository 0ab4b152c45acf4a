"""Background services for NoteVault."""
