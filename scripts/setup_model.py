"""
scripts/setup_model.py: download the primary and fallback models for offline use.

The engine loads with ``local_files_only=True``, so both variants must be in
the local Hugging Face cache before ``regexlab generate`` can work. Run this
once with internet access.

Usage:
    python scripts/setup_model.py [--config PATH] [--cache-dir DIR] [--only primary|fallback]
    HF_TOKEN=hf_... python scripts/setup_model.py
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

from regexlab.core.config import load_config
from regexlab.core.constants import ModelVariant

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )


def _check_hf_token() -> Optional[str]:
    """Return a Hugging Face token from the environment, if any."""
    token = os.environ.get("HF_TOKEN") or os.environ.get("HUGGINGFACE_TOKEN")
    if token:
        logger.info("Hugging Face token found in environment")
    return token


def download_model(model_id: str, cache_dir: Optional[Path], token: Optional[str]) -> bool:
    """
    Download *model_id* into the Hugging Face cache.

    Returns:
        ``True`` on success.
    """
    from huggingface_hub import snapshot_download  # type: ignore

    logger.info("Downloading %s", model_id)
    t0 = time.time()
    try:
        snapshot_download(
            repo_id=model_id,
            cache_dir=str(cache_dir) if cache_dir is not None else None,
            token=token,
            ignore_patterns=["*.msgpack", "flax_model*", "tf_model*", "*.onnx", "*.gguf"],
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("Download of %s failed: %s", model_id, exc)
        return False
    logger.info("Downloaded %s in %.0fs", model_id, time.time() - t0)
    return True


def verify_model(model_id: str, cache_dir: Optional[Path]) -> bool:
    """Load the tokenizer offline to confirm the snapshot is usable."""
    from transformers import AutoTokenizer  # type: ignore

    kwargs: dict = {"cache_dir": str(cache_dir)} if cache_dir is not None else {}
    try:
        tokenizer = AutoTokenizer.from_pretrained(model_id, local_files_only=True, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.error("Verification of %s failed: %s", model_id, exc)
        return False
    if not getattr(tokenizer, "chat_template", None):
        logger.error("%s has no chat template; it cannot be used as an engine", model_id)
        return False
    logger.info("Verified %s", model_id)
    return True


def main() -> int:
    _setup_logging()
    parser = argparse.ArgumentParser(description="Download regexlab models for offline use")
    parser.add_argument("--config", type=Path, default=None, help="Path to regexlab.yaml")
    parser.add_argument("--cache-dir", type=Path, default=None, help="Override engine.cache_dir")
    parser.add_argument("--only", choices=["primary", "fallback"], default=None,
                        help="Download just one variant")
    args = parser.parse_args()

    cfg = load_config(args.config).engine
    cache_dir = args.cache_dir or cfg.resolved_cache_dir
    variants = [ModelVariant[args.only.upper()]] if args.only else list(ModelVariant)
    token = _check_hf_token()

    ok = True
    for variant in variants:
        model_id = cfg.model_id_for(variant)
        logger.info("── %s: %s", variant.value, model_id)
        ok = download_model(model_id, cache_dir, token) and verify_model(model_id, cache_dir) and ok

    if not ok:
        logger.error("Setup incomplete; re-run to retry")
        return 1
    logger.info("Setup complete. Try: regexlab generate \"four digit years\"")
    return 0


if __name__ == "__main__":
    sys.exit(main())
