"""Socket.IO handlers: peer-to-peer call signaling.

The server never inspects ``signal`` payloads; it only routes them between
connection ids and keeps the call-room roster.
"""

from __future__ import annotations


def register(socketio, settings, relay, ctx):
    """Register joinRoom / sendingSignal / returningSignal / endCall."""

    @socketio.on("joinRoom")
    def handle_join_room(room_id=None, user_info=None):
        ack = ctx.call("joinRoom", relay.join_call_room, room_id, user_info)
        if ack.get("success"):
            ack["users"] = ack.pop("result")
        return ack

    @socketio.on("sendingSignal")
    def handle_sending_signal(payload=None):
        ack = ctx.call("sendingSignal", relay.sending_signal, payload)
        if ack.get("success"):
            ack["delivered"] = ack.pop("result")
        return ack

    @socketio.on("returningSignal")
    def handle_returning_signal(payload=None):
        ack = ctx.call("returningSignal", relay.returning_signal, payload)
        if ack.get("success"):
            ack["delivered"] = ack.pop("result")
        return ack

    @socketio.on("endCall")
    def handle_end_call(room_id=None):
        # The recorded call room wins; room_id from the client is advisory.
        return ctx.call("endCall", relay.end_call, throttle=False)
