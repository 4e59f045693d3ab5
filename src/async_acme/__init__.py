"""Asynchronous ACME protocol client.

This package is an asyncio implementation of the client side of the
`ACME protocol`_: directory discovery, account management, orders,
challenge validation, finalization and certificate download.

.. _`ACME protocol`: https://datatracker.ietf.org/doc/html/rfc8555

"""
