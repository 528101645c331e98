import logging

logger = logging.getLogger("pocketllm_sdk")
