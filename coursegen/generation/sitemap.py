"""
Sitemap generation for generated course articles.

Writes sitemap.xml into SITEMAP_DIR. Past 50,000 URLs the entries are split
into numbered files and sitemap.xml becomes a sitemap index.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional
from xml.sax.saxutils import escape

from coursegen.database.models import Article

SITEMAP_MAX_ENTRIES = 50000
SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"


@dataclass
class SitemapUrl:
    loc: str
    lastmod: Optional[str] = None
    changefreq: Optional[str] = None
    priority: Optional[str] = None


def _lastmod(value: Optional[str]) -> Optional[str]:
    """ISO timestamp -> YYYY-MM-DD"""
    if not value:
        return None
    return value[:10]


def article_urls(articles: Iterable[Article], base_url: str) -> List[SitemapUrl]:
    base_url = base_url.rstrip("/")
    urls = [SitemapUrl(loc=f"{base_url}/", changefreq="daily", priority="1.0")]
    for article in articles:
        if not article.slug:
            continue
        urls.append(SitemapUrl(
            loc=f"{base_url}/articles/{article.slug}",
            lastmod=_lastmod(article.updated_at),
            changefreq="weekly",
            priority="0.8",
        ))
    return urls


def render_urlset(urls: List[SitemapUrl]) -> str:
    elements = []
    for url in urls:
        parts = [f"    <url>\n      <loc>{escape(url.loc)}</loc>"]
        if url.lastmod:
            parts.append(f"      <lastmod>{url.lastmod}</lastmod>")
        if url.changefreq:
            parts.append(f"      <changefreq>{url.changefreq}</changefreq>")
        if url.priority:
            parts.append(f"      <priority>{url.priority}</priority>")
        parts.append("    </url>")
        elements.append("\n".join(parts))

    body = "\n".join(elements)
    return f'<?xml version="1.0" encoding="UTF-8"?>\n<urlset xmlns="{SITEMAP_NS}">\n{body}\n</urlset>\n'


def render_index(filenames: List[str], base_url: str) -> str:
    base_url = base_url.rstrip("/")
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    elements = "\n".join(
        f"    <sitemap>\n      <loc>{escape(f'{base_url}/sitemaps/{name}')}</loc>\n"
        f"      <lastmod>{today}</lastmod>\n    </sitemap>"
        for name in filenames
    )
    return f'<?xml version="1.0" encoding="UTF-8"?>\n<sitemapindex xmlns="{SITEMAP_NS}">\n{elements}\n</sitemapindex>\n'


def write_sitemaps(urls: List[SitemapUrl], output_dir: str, base_url: str) -> List[str]:
    """
    Write sitemap file(s). Returns the filenames written, sitemap.xml last.
    """
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)

    if len(urls) <= SITEMAP_MAX_ENTRIES:
        (directory / "sitemap.xml").write_text(render_urlset(urls), encoding="utf-8")
        return ["sitemap.xml"]

    written = []
    for index, start in enumerate(range(0, len(urls), SITEMAP_MAX_ENTRIES), start=1):
        name = f"sitemap-{index}.xml"
        (directory / name).write_text(render_urlset(urls[start:start + SITEMAP_MAX_ENTRIES]), encoding="utf-8")
        written.append(name)

    (directory / "sitemap.xml").write_text(render_index(written, base_url), encoding="utf-8")
    written.append("sitemap.xml")
    return written
