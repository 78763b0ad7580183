"""Real-time room relay: sessions, rooms, messages, signaling.

Components:
    - SessionRegistry (sessions): authenticated connections and presence.
    - RoomManager (rooms): live room membership and fan-out.
    - MessageRelay (messages): persist-then-broadcast and history replay.
    - SignalingRelay (signaling): point-to-point call signaling.
    - ConnectionLifecycleController (lifecycle): per-connection state machine.
    - ChatHub (hub): process-wide wiring of the above.
"""
