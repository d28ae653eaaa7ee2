import logging

logger = logging.getLogger("peerdrop.transfers")
