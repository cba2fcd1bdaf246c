"""
IoT Device Gateway - MQTT Server
================================

Lets cloud-side callers (REST handlers, the socket layer, voice
assistant integrations, timers) command ESP32 boards and receive their
telemetry over MQTT:
- Sends commands and waits for their acknowledgments
- Classifies board responses (acks, state changes, heartbeats, sensors, errors)
- Auto-registers boards that announce themselves
- Keeps board device lists in sync

MQTT Topics:
- cmd/{boardId}: Commands to boards; boards also send device_sync / device_request here
- resp/{boardId}: Responses, events and telemetry from boards
- register: Board announces before provisioning
- backend/status: Gateway online/offline presence (last will)
"""

from gateway.server import GatewayServer


__all__ = ['GatewayServer']
