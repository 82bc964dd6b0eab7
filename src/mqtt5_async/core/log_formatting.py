"""
Optional log formatting utilities for applications embedding the client.

The engine itself only attaches structured context to its log records through
MessageLogger extras (client_id, packet_id, topic, qos, reason_code, direction,
packet). Nothing here is installed automatically; applications pick a formatter
or call setup_mqtt_logging().
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List

import orjson


# Attributes every LogRecord carries; anything else arrived through `extra`.
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

MQTT_FIELDS = ("client_id", "direction", "packet", "packet_id", "topic", "qos", "reason_code")


@dataclass
class MQTTLogFormatConfig:
    """Configuration for MQTT log formatting that users can customize."""

    # Main format template
    format_template: str = (
        "%(asctime)s - %(name)s - %(levelname)s - {mqtt_tag}%(message)s"
    )

    # Tag template for MQTT-specific info
    tag_template: str = "[{client_id}{direction}]{metadata} - "

    # Direction indicators
    direction_map: Dict[str, str] = field(
        default_factory=lambda: {
            "incoming": " / IN ←",
            "outgoing": " / OUT →",
        }
    )

    # Fields to show in metadata
    metadata_fields: List[str] = field(
        default_factory=lambda: ["packet", "packet_id", "topic", "reason_code"]
    )

    # Field display names
    field_names: Dict[str, str] = field(
        default_factory=lambda: {
            "packet_id": "id",
            "reason_code": "rc",
        }
    )

    # Maximum field value length
    max_field_length: int = 50

    # Whether to show the tag when no client context is present
    show_tag_for_non_mqtt: bool = False


class MQTTLogFormatter(logging.Formatter):
    """
    Human readable formatter that prefixes records with the client context.
    """

    def __init__(self, config: MQTTLogFormatConfig | None = None):
        super().__init__()
        self.config = config or MQTTLogFormatConfig()

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "client_id"):
            mqtt_tag = self._build_mqtt_tag(record)
        elif self.config.show_tag_for_non_mqtt:
            mqtt_tag = "[NO-MQTT] - "
        else:
            mqtt_tag = ""

        format_str = self.config.format_template.format(mqtt_tag=mqtt_tag)
        return logging.Formatter(format_str).format(record)

    def _build_mqtt_tag(self, record: logging.LogRecord) -> str:
        direction = getattr(record, "direction", None) or ""
        return self.config.tag_template.format(
            client_id=getattr(record, "client_id", "unknown"),
            direction=self.config.direction_map.get(direction.lower(), ""),
            metadata=self._build_metadata(record),
        )

    def _build_metadata(self, record: logging.LogRecord) -> str:
        parts = []

        for name in self.config.metadata_fields:
            value = getattr(record, name, None)
            if value is None:
                continue

            display_name = self.config.field_names.get(name, name)

            value_str = str(value)
            if (
                self.config.max_field_length > 0
                and len(value_str) > self.config.max_field_length
            ):
                value_str = value_str[: self.config.max_field_length - 3] + "..."

            parts.append(f"{display_name}={value_str}")

        return f" | {' | '.join(parts)}" if parts else ""


class StructuredMQTTFormatter(logging.Formatter):
    """
    Structured (JSON) formatter for MQTT logs.

    Outputs one JSON object per record with the client context grouped under
    "mqtt" and any other extras under "extra".
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        mqtt_fields = {}
        extra = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES or value is None:
                continue
            if key in MQTT_FIELDS:
                mqtt_fields[key] = value
            else:
                extra[key] = value

        if mqtt_fields:
            log_data["mqtt"] = mqtt_fields
        if extra:
            log_data["extra"] = extra
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(log_data, default=str).decode("utf-8")


def setup_mqtt_logging(
    logger_name: str,
    level: int = logging.INFO,
    format_style: str = "structured",  # "structured", "formatted", or "simple"
    config: MQTTLogFormatConfig | None = None,
) -> logging.Logger:
    """
    Convenience function to set up MQTT-aware logging.

    Args:
        logger_name: Name of the logger to configure (e.g. "mqtt5_async")
        level: Logging level
        format_style: "structured" (JSON), "formatted" (MQTT-aware), or "simple"
        config: Custom format configuration (only used with "formatted")

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)

    if format_style == "structured":
        formatter = StructuredMQTTFormatter()
    elif format_style == "formatted":
        formatter = MQTTLogFormatter(config)
    else:  # simple
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger
