"""Marine reserve eDNA survey to Darwin Core Occurrence and DNA derived data."""
