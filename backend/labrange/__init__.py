"""Lab Range - disposable VM lab sessions."""
