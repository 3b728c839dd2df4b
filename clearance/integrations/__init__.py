"""Adapters for the external collaborators of the clearance workflow."""
