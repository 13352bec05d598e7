"""Signaling relay server and the client participants use to reach it.

* [`RelayServer`][peercall.relay.server.RelayServer] assigns each
  connection an identifier and forwards call offers, answers, and teardown
  notices between participants.
* [`RelayClient`][peercall.relay.client.RelayClient] is the participant
  side of the connection.
"""
from __future__ import annotations
