"""Small helpers shared by services and schemas."""
