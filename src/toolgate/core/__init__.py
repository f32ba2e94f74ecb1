"""Toolgate core data models shared by every layer."""
