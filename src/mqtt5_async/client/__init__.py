"""
Threaded MQTT v5 client engine.
"""
from .client import MQTTClient
from .connection import ConnectionManager
from .callbacks import MqttCallbackProtocol, MqttCallbackBase

__all__ = [
    "MQTTClient",
    "ConnectionManager",
    "MqttCallbackProtocol",
    "MqttCallbackBase",
]
