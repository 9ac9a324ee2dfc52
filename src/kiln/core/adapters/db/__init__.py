"""SQLModel persistence for job records and notifications."""
