"""Tether: encrypted peer-to-peer RPC for remote Claude CLI sessions."""

__version__ = "0.1.0"
