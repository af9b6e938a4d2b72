"""Outbound collaborators of the engine: channel senders and the user directory."""
