"""
Web service configuration.
"""
from orderview.config import config, VERSION

# Web server settings
WEB_HOST = config.web.host
WEB_PORT = config.web.port

# Paging
DEFAULT_PAGE_SIZE = config.web.default_page_size
DEFAULT_STOCK_PAGE_SIZE = config.web.default_stock_page_size
MAX_PAGE_SIZE = config.web.max_page_size

# Per-client request allowance for read endpoints
RATE_LIMIT = f"{config.web.rate_limit_per_minute}/minute"

__all__ = [
    "WEB_HOST",
    "WEB_PORT",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_STOCK_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "RATE_LIMIT",
    "VERSION",
]
