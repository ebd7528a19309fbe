"""Motor de consultas a portales públicos protegidos con captcha."""

from consultas.config import EngineConfig
from consultas.engine import QueryEngine
from consultas.models import QueryResult, QueryStatus, SearchMode

__all__ = ["EngineConfig", "QueryEngine", "QueryResult", "QueryStatus", "SearchMode"]
