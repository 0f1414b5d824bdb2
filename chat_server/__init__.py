"""Encrypted real-time messaging backbone for closed groups."""
