from relay.common.utils.logger import setup_logger

logger, log_buffer = setup_logger("relay.runner")
