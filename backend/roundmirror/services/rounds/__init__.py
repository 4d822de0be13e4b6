"""Round-state services: reconciliation, timers, animation and actions.

The engine objects here are synchronous and know nothing about Flask or
Socket.IO. ``session`` binds them together per topic and ``hub`` connects
sessions to the push channel, the snapshot endpoint and the view layer.
"""
