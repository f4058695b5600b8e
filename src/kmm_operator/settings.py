"""Operator configuration from environment."""

import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

RECONCILE_INTERVAL_SECONDS = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "60"))
RETRY_DELAY_SECONDS = int(os.getenv("RETRY_DELAY_SECONDS", "30"))
API_REQUEST_TIMEOUT_SECONDS = int(os.getenv("API_REQUEST_TIMEOUT_SECONDS", "30"))
REGISTRY_TIMEOUT_SECONDS = int(os.getenv("REGISTRY_TIMEOUT_SECONDS", "10"))

METRICS_PORT = int(os.getenv("METRICS_PORT", "8080"))

# Images used by the build and sign jobs
KANIKO_IMAGE = os.getenv("KANIKO_IMAGE", "gcr.io/kaniko-project/executor:latest")
SIGN_IMAGE = os.getenv("SIGN_IMAGE", "quay.io/edge-infrastructure/kernel-module-management-signimage:latest")
