"""Enumerations, ORM tables and Pydantic schemas for the key security core."""
