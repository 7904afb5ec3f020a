# core/page_routes.py
"""Optional serving of a prebuilt (static export) frontend"""

import logging
from pathlib import Path
from typing import Optional

from aiohttp import web

logger = logging.getLogger(__name__)


def resolve_page(static_dir: Path, tail: str) -> Optional[Path]:
    """
    File for a page path: the file itself, <tail>.html or <tail>/index.html

    Returns None for missing files and for paths escaping static_dir.
    """
    root = static_dir.resolve()
    relative = tail.strip('/')

    candidates = [relative, f"{relative}.html", f"{relative}/index.html"] if relative else ['index.html']

    for candidate in candidates:
        path = (root / candidate).resolve()
        if not path.is_relative_to(root):
            logger.warning(f"⚠️ Rejected page path outside static dir: {tail}")
            return None
        if path.is_file():
            return path

    return None


def setup_routes(app: web.Application, base_path: str, static_dir: Optional[str]):
    if not static_dir:
        return

    root = Path(static_dir)
    if not root.is_dir():
        logger.warning(f"⚠️ server.static_dir does not exist: {root}")
        return

    async def page(request: web.Request) -> web.StreamResponse:
        path = resolve_page(root, request.match_info['tail'])
        if path is None:
            raise web.HTTPNotFound()
        return web.FileResponse(path)

    app.router.add_get(f"{base_path}/{{tail:.*}}", page)
    logger.info(f"📁 Serving frontend from {root}")
