"""
main.py — Single entry point.

Runs one scan session for a photo on disk and prints every update the
pipeline publishes, ending with the full result card.

    python main.py photo.jpg
    python main.py photo.jpg --code 012345678905
    python main.py photo.jpg --platform FACEBOOK --cost 4.50

Architecture:
  asyncio event loop
    └── ScanSupervisor
          ├── identification     (ProviderRecognizer)
          ├── deep analysis      (ProviderRecognizer)
          ├── market research    (market_search + ListingDescriber)
          └── image upload       (Supabase Storage, optional)
"""
import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import config

# Log file lives in the data/ directory so that a single volume mount captures it.
_data_dir = Path(os.getenv("DATA_DIR", config.DATA_DIR))
_data_dir.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
    handlers=[
        logging.StreamHandler(sys.stderr),
        logging.FileHandler(str(_data_dir / "scan.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("aiohttp").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Identify and price an item from a photo.")
    parser.add_argument("photo", type=Path, help="path to the captured photo")
    parser.add_argument("--code", help="scanned UPC/EAN code; skips visual recognition")
    parser.add_argument("--platform", default=config.LISTING_PLATFORM, choices=["EBAY", "FACEBOOK"],
                        type=str.upper, help="description style")
    parser.add_argument("--notes", default="", help="condition notes for the description")
    parser.add_argument("--cost", type=float, default=0.0, help="what you paid for the item")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    import market_search
    import style
    from describer import ListingDescriber
    from models import ScanPhase
    from object_store import get_object_store
    from providers.manager import ProviderRecognizer, get_providers
    from supervisor import ScanSupervisor

    try:
        providers = get_providers()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        return 2
    logger.info("Recognizer providers: %s  (mode: %s)", ", ".join(providers), config.VISION_MODE)
    logger.info("Market backend: %s", market_search.backend_name())

    recognizer = ProviderRecognizer()
    supervisor = ScanSupervisor(
        recognizer=recognizer,
        market=market_search,
        describer=ListingDescriber(recognizer),
        object_store=get_object_store(),
        platform=args.platform,
        notes=args.notes,
    )
    supervisor.publisher.subscribe(lambda update: print(style.status_line(update), flush=True))

    raw = args.photo.read_bytes()
    session = supervisor.start_capture()
    await supervisor.submit_frame(session, raw, args.code)
    result = await supervisor.wait(session)

    if result is None:
        return 1
    print()
    print(style.result_card(result, show_cost=config.SHOW_COST_INFO, item_cost=args.cost))

    await supervisor.flush()
    image_url = supervisor.take_upload(session.session_id)
    if image_url:
        print(f"🖼️ {image_url}")
    return 0 if session.phase is ScanPhase.COMPLETE else 1


def main(argv=None) -> None:
    args = parse_args(argv)
    if not args.photo.is_file():
        sys.exit(f"No such file: {args.photo}")
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
