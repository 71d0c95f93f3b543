"""
SOS Dispatch Real-time Module
=============================

``trackingChannel`` merges and fans out per-request updates;
``socketServer`` hosts the ``/tracking`` Socket.IO namespace.

Mount in the FastAPI app::

    from sos_dispatch.realtime.socketServer import socket_app
    app.mount("/ws", socket_app)
"""
