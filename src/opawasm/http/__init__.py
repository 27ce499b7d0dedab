"""
Remote OPA server client.

Key Components:
    - RemoteClient: httpx client for the health, policy and data APIs
    - Decision: A decision document with its decision id
    - Policy: A policy module stored on the server
"""

from opawasm.http.client import Decision, Policy, RemoteClient

__all__ = [
    "Decision",
    "Policy",
    "RemoteClient",
]
