import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "edge-proxy")
SERVICE_VERSION = os.getenv("SERVICE_VERSION", "2.1.0")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
