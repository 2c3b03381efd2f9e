#!/usr/bin/env python3
"""Probe feature bindings: resolve each configured model and time one call."""

import argparse
import asyncio
import logging
import os
import sys
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()


async def probe(router, feature, prompt: str) -> bool:
    from dispatch_center.llm.feature_router import CallOptions

    configs = router.get_candidate_configs(feature)
    print(f"\n=== {feature} ({len(configs)} candidate(s)) ===")
    if not configs:
        print(f"✗ {router.feature_not_configured_message(feature)}")
        return False

    all_passed = True
    for config in configs:
        limits = router.registry.get_model_limits(config.model)
        print(
            f"--- {config.provider.display_name}:{config.model} "
            f"(ctx={limits.context_window}, max_output={limits.max_output}, "
            f"keys={config.key_manager.available_key_count}/{config.key_manager.total_key_count})"
        )
        start = time.perf_counter()
        try:
            reply = await router.call_feature_api(
                feature,
                "You are a connectivity probe. Answer in one short sentence.",
                prompt,
                CallOptions(max_tokens=64, config_override=config),
            )
            elapsed = time.perf_counter() - start
            print(f"✓ responded in {elapsed:.2f}s: {reply[:80]!r}")
        except Exception as e:
            elapsed = time.perf_counter() - start
            print(f"✗ failed after {elapsed:.2f}s: {type(e).__name__}: {e}")
            all_passed = False
    return all_passed


async def main():
    from dispatch_center.config.loader import load_dispatch_config
    from dispatch_center.features import AIFeature
    from dispatch_center.llm.feature_router import FeatureRouter
    from dispatch_center.utils.llm_client import close_clients

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", help="YAML config path (default: $DISPATCH_CONFIG_PATH)")
    parser.add_argument(
        "--feature",
        action="append",
        choices=[f.value for f in AIFeature],
        help="Feature to probe; repeat for several (default: all)",
    )
    parser.add_argument("--prompt", default="Say hello.")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_dispatch_config(args.config)
    if config is None:
        print("No dispatch config loaded; set DISPATCH_CONFIG_PATH or pass --config")
        return 1

    router = FeatureRouter(config)
    features = [AIFeature(f) for f in args.feature] if args.feature else list(AIFeature)

    print("=" * 60)
    print("AI Dispatch Center Feature Probe")
    print("=" * 60)

    results = {}
    try:
        for feature in features:
            results[feature] = await probe(router, feature, args.prompt)
    finally:
        await close_clients()

    print("\n" + "=" * 60)
    print("Summary")
    print("=" * 60)
    for feature, passed in results.items():
        status = "✓ PASS" if passed else "✗ FAIL"
        print(f"  {feature}: {status}")
    return 0 if all(results.values()) else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
