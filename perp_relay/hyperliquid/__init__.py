"""Hyperliquid exchange integration.

Order and agent approval message construction, signing,
the API wallet registry and the exchange HTTP gateway.

See :py:mod:`perp_relay.hyperliquid.relay` for the flows tying these together.
"""
