"""
Résolution des chemins de navigation à partir d'un nom de route et de paramètres.
Les gabarits sont configurables (config.ROUTE_PATHS); le front résout les pages.
"""
import urllib.parse
from typing import Any, Dict, Optional

from storefront.config import ROUTE_PATHS


def path_by_route_name(name: str, params: Optional[Dict[str, Any]] = None, routes: Optional[Dict[str, str]] = None) -> str:
    templates = routes if routes is not None else ROUTE_PATHS
    try:
        template = templates[name]
    except KeyError:
        raise ValueError(f"Route inconnue: {name}") from None
    safe = {k: urllib.parse.quote(str(v), safe="") for k, v in (params or {}).items()}
    try:
        return template.format(**safe)
    except KeyError as e:
        raise ValueError(f"Paramètre manquant pour {name}: {e.args[0]}") from None
