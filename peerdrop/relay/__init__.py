"""Rendezvous relay

Holds one live connection per registered identity and forwards signaling and
relayed file envelopes between them without looking inside.
"""
import logging

logger = logging.getLogger(__package__)
