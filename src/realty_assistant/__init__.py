# Realty assistant package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("REALTY_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("realty")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[REALTY][%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    llm_level_name = (os.getenv("REALTY_LLM_LOG_LEVEL") or level_name).upper()
    logging.getLogger("realty.llm").setLevel(getattr(logging, llm_level_name, level))
    audit_level_name = (os.getenv("REALTY_AUDIT_LOG_LEVEL") or level_name).upper()
    logging.getLogger("realty.audit").setLevel(getattr(logging, audit_level_name, level))


_configure_logging()
