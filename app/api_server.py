from __future__ import annotations

from marketplace_search.api import create_app
from marketplace_search.config import Settings, configure_logging
from marketplace_search.service import MarketplaceService


settings = Settings.from_env()
configure_logging(settings.log_level)

service = MarketplaceService(settings)
app = create_app(service)
