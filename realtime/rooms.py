"""Socket.IO handlers: chat rooms, messages, typing and call notifications.

Fan-out always targets each member's personal room, so a user with several
tabs/devices gets one copy per connection.
"""

from __future__ import annotations


def register(socketio, settings, relay, ctx):
    """Register joinChat / newMessage / typing / stopTyping / initCall."""

    @socketio.on("joinChat")
    def handle_join_chat(room=None):
        return ctx.call("joinChat", relay.join_chat, room)

    @socketio.on("newMessage")
    def handle_new_message(message=None):
        return ctx.call("newMessage", relay.new_message, message)

    @socketio.on("typing")
    def handle_typing(room=None, sender=None):
        return ctx.call("typing", relay.typing, room, sender)

    @socketio.on("stopTyping")
    def handle_stop_typing(room=None, *_):
        return ctx.call("stopTyping", relay.stop_typing, room)

    @socketio.on("initCall")
    def handle_init_call(chat=None, user_info=None):
        return ctx.call("initCall", relay.init_call, chat, user_info)
