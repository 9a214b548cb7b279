"""
Global Settings
"""
import os

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_DIR = os.environ.get("PMS_LOG_DIR", "logs")

# Ratios are decimal strings, parsed into ppm by the components that use them
MAINTENANCE_MARGIN_RATIO = os.environ.get("PMS_MAINTENANCE_MARGIN_RATIO", "0.025")
ALERT_THRESHOLD_PCT = os.environ.get("PMS_ALERT_THRESHOLD_PCT", "0.10")

SUBSCRIBER_QUEUE_SIZE = int(os.environ.get("PMS_SUBSCRIBER_QUEUE_SIZE", "1000"))
PARTITION_QUEUE_SIZE = int(os.environ.get("PMS_PARTITION_QUEUE_SIZE", "10000"))
