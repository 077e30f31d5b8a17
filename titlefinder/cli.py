from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List

from extensions.logging import LoggingExtension

from .config import DEFAULT_PROBE_URL, load_config
from .pipeline import TitlePipeline, TitleResult
from .utils import InvalidURLError

logger = logging.getLogger("titlefinder")


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Resolve best-seller / ranking page URLs to a human-readable title"
    )
    p.add_argument("url", nargs="?", default=None, help=f"Target URL (default: {DEFAULT_PROBE_URL})")
    p.add_argument("--urls-file", type=Path, default=None, help="Text file with one URL per line ('#' comments allowed)")
    p.add_argument("--ranking", action="store_true", help="Extract the structured ranking instead of the title")
    p.add_argument("--json", action="store_true", help="Emit JSON instead of plain text")
    p.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console log level")
    return p.parse_args(argv)


def _read_urls(args: argparse.Namespace) -> List[str]:
    urls: List[str] = []
    if args.urls_file is not None:
        for line in args.urls_file.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                urls.append(line)
    if args.url:
        urls.insert(0, args.url)
    return urls or [DEFAULT_PROBE_URL]


def _print_title(result: TitleResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps(asdict(result), ensure_ascii=False))
        return
    for st in result.stages:
        print(f"  - {st.stage}: {st.status}" + (f" ({st.detail})" if st.detail else ""))
        if st.html_info:
            print("      html: " + " ".join(f"{k}={v}" for k, v in st.html_info.items()))
    print(f"[{result.method}] {result.title}")


# ----------------------------
# Entry points
# ----------------------------

async def main_async(argv: List[str] | None = None) -> int:
    args = _parse_args(argv)
    cfg = load_config()

    level = getattr(logging, args.log_level)
    log_ext = LoggingExtension(global_level=level, buffer_capacity=cfg.log_buffer_capacity)
    logger.setLevel(level)

    if cfg.proxy_endpoint:
        logger.info("Proxy fetch enabled via %s", cfg.proxy_endpoint)

    rc = 0
    try:
        async with TitlePipeline(cfg, sink=log_ext.sink) as pipeline:
            for url in _read_urls(args):
                try:
                    if args.ranking:
                        page = await pipeline.extract_ranking(url)
                        if args.json:
                            print(json.dumps(page.to_dict(), ensure_ascii=False))
                        else:
                            print(f"{page.title or '(no title)'} [{len(page.items)} items]")
                            for item in page.items:
                                print(f"  #{item.rank} {item.product_name}" + (f"  {item.price_text}" if item.price_text else ""))
                    else:
                        _print_title(await pipeline.resolve_title(url), args.json)
                except InvalidURLError as e:
                    logger.error("%s: %s", url, e)
                    rc = 1
    except Exception:
        logger.exception("Unhandled error")
        rc = 1
    finally:
        log_ext.close()
    return rc


def main() -> None:
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
