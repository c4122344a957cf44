from __future__ import annotations

import argparse
import time
from pathlib import Path

from tqdm import tqdm

from cutout.contracts import AssetJob
from cutout.io import iter_images
from cutout.log import configure_logging
from cutout.orchestrator import BatchOrchestrator
from cutout.pipeline import CutoutPipeline
from cutout.settings import (
    BackgroundOption,
    CutoutSettings,
    ShadowMode,
    SettingsStore,
    load_settings,
    log_level_from_env,
)
from cutout.store import AssetStore


def main() -> int:
    snapshot = load_settings()
    configure_logging(log_level_from_env())

    parser = argparse.ArgumentParser(description="Batch product cutouts (segment, refine, compose, QC).")
    parser.add_argument("--input", required=True, type=str, help="Input directory containing images.")
    parser.add_argument("--output", required=True, type=str, help="Output directory for RGBA PNGs and masks.")
    parser.add_argument(
        "--model",
        default=snapshot.model_name or "birefnet",
        type=str,
        help="Model name: 'birefnet', 'hf:<repo>', a TorchScript path, a name under CUTOUT_MODELS_DIR, or 'stub'.",
    )
    parser.add_argument("--concurrency", default=snapshot.batch.concurrency_limit, type=int, help="Parallel jobs (1-6).")
    parser.add_argument("--max-retries", default=snapshot.batch.max_retries, type=int, help="Retries per failed image.")
    parser.add_argument("--no-retry", action="store_true", help="Fail an image on its first error.")
    parser.add_argument("--preserve-exif", action="store_true", help="Copy EXIF/ICC metadata into the output PNG.")
    parser.add_argument("--no-crop", action="store_true", help="Pad the full frame instead of cropping to the object.")
    parser.add_argument("--white-background", action="store_true", help="Flatten onto white instead of transparency.")
    parser.add_argument("--shadow", default="none", choices=[m.value for m in ShadowMode], help="Drop shadow mode.")
    parser.add_argument("--manifest", default=None, type=str, help="Queue manifest JSON (default: <output>/queue.json).")
    args = parser.parse_args()

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    manifest_path = Path(args.manifest) if args.manifest else output_dir / "queue.json"
    store = AssetStore.load(str(manifest_path))
    store.reset_statuses()
    known = {item.source for item in store.all_items()}
    for img_path in iter_images(input_dir):
        if str(img_path) not in known:
            store.add(AssetJob(source=str(img_path)))

    total = len(store.pending_items())
    if total == 0:
        print(f"No pending images under {input_dir}")
        return 0

    settings = SettingsStore(
        snapshot.model_copy(
            update={
                "model_name": args.model,
                "batch": snapshot.batch.model_copy(
                    update={
                        "concurrency_limit": min(6, max(1, args.concurrency)),
                        "max_retries": max(0, args.max_retries),
                        "retry_on_failure": not args.no_retry,
                        "preserve_exif": args.preserve_exif or snapshot.batch.preserve_exif,
                    }
                ),
                "cutout": CutoutSettings(
                    auto_crop=not args.no_crop,
                    background_option=BackgroundOption.WHITE if args.white_background else BackgroundOption.TRANSPARENT,
                    shadow_mode=ShadowMode(args.shadow),
                ),
            }
        )
    )

    orchestrator = BatchOrchestrator(store, settings, str(output_dir), CutoutPipeline())
    t0 = time.perf_counter()
    orchestrator.start()
    with tqdm(total=total, desc="Processing", unit="img") as bar:
        while not orchestrator.wait(timeout=0.5):
            done = orchestrator.completed_count + orchestrator.failed_count
            bar.update(done - bar.n)
            bar.set_postfix(failed=orchestrator.failed_count, ipm=f"{orchestrator.images_per_minute:.1f}")
        bar.update(orchestrator.completed_count + orchestrator.failed_count - bar.n)

    store.save(str(manifest_path))
    counts = store.counts()
    t1 = time.perf_counter()
    print(
        "Done.\n"
        f"- total: {total}\n"
        f"- done: {counts['done']}\n"
        f"- needs_review: {counts['needs_review']}\n"
        f"- failed: {counts['failed']}\n"
        f"- elapsed_s: {t1 - t0:.2f}\n"
        f"- output: {output_dir.resolve()}\n"
        f"- manifest: {manifest_path.resolve()}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
