"""
Main entry point for scene reconstruction

Usage:
    python -m scenerecon.run_reconstruction <image_dir> [options]

Examples:
    python -m scenerecon.run_reconstruction data/kitchen --calibration calib.npz
    python -m scenerecon.run_reconstruction data/room --fx 1200 --fy 1200 --cx 960 --cy 540
    python -m scenerecon.run_reconstruction data/table --calibration calib.npz --config fast.json
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

import numpy as np

from .config import PipelineConfig
from .core import (
    CameraIntrinsics,
    DirectoryCapture,
    PipelineOrchestrator,
    PlyExportReconstructor,
    SiftDescriptorExtractor,
    load_calibration
)
from .core.utils import compute_scene_bounds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Scene reconstruction from images')
    parser.add_argument('image_dir', help='Directory holding the captured images')
    parser.add_argument('--calibration', type=str, default=None,
                        help='OpenCV calibration .npz with mtx/dist')
    parser.add_argument('--fx', type=float, default=None, help='Focal length x (px)')
    parser.add_argument('--fy', type=float, default=None, help='Focal length y (px)')
    parser.add_argument('--cx', type=float, default=None, help='Principal point x (px)')
    parser.add_argument('--cy', type=float, default=None, help='Principal point y (px)')
    parser.add_argument('--config', type=str, default=None,
                        help='Pipeline configuration JSON')
    parser.add_argument('--max-images', type=int, default=None,
                        help='Maximum number of images to process')
    parser.add_argument('--output', type=str, default=None,
                        help='Output directory')
    parser.add_argument('--verbose', action='store_true',
                        help='Debug logging')
    return parser


def resolve_intrinsics(args) -> CameraIntrinsics:
    if args.calibration:
        return load_calibration(args.calibration)

    manual = (args.fx, args.fy, args.cx, args.cy)
    if any(v is None for v in manual):
        raise SystemExit("ERROR: pass --calibration or all of --fx/--fy/--cx/--cy")

    return CameraIntrinsics(fx=args.fx, fy=args.fy, cx=args.cx, cy=args.cy)


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    image_dir = Path(args.image_dir)
    output_dir = Path(args.output) if args.output else image_dir / 'reconstruction'

    if not image_dir.exists():
        print(f"ERROR: Image directory not found: {image_dir}")
        sys.exit(1)

    intrinsics = resolve_intrinsics(args)
    config = PipelineConfig.from_file(args.config) if args.config else PipelineConfig()

    # Print configuration
    print("=" * 60)
    print("SCENE RECONSTRUCTION")
    print("=" * 60)
    print(f"Images: {image_dir}")
    print(f"Output: {output_dir}")
    print(f"Intrinsics: fx={intrinsics.fx:.1f} fy={intrinsics.fy:.1f} "
          f"cx={intrinsics.cx:.1f} cy={intrinsics.cy:.1f}")
    print(f"Matcher: {config.matcher.index} (threshold {config.matcher.similarity_threshold})")
    print()

    orchestrator = PipelineOrchestrator(
        capture=DirectoryCapture(str(image_dir), max_images=args.max_images, intrinsics=intrinsics),
        extractor=SiftDescriptorExtractor(),
        dense=PlyExportReconstructor(str(output_dir)),
        intrinsics=intrinsics,
        config=config
    )
    orchestrator.on_transition(
        lambda previous, current, state: print(f"[{current.value}]")
    )

    try:
        state = asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)

    if state.failed:
        print("\n" + "=" * 60)
        print(f"FAILED during {state.failed_stage.value}")
        print("=" * 60)
        print(f"{type(state.error).__name__}: {state.error}")
        sys.exit(1)

    positions = np.array([p.position for p in state.points]).reshape(-1, 3)
    bounds = compute_scene_bounds(positions)
    lighting = state.lighting

    # Summary
    print("\n" + "=" * 60)
    print("DONE!")
    print("=" * 60)
    print(f"Results saved to: {output_dir}")
    print(f"  - sparse.ply: {len(state.points):,} points")
    print(f"  - cameras.ply: {len(state.poses)} camera positions")
    print(f"Scene size: {bounds['size']:.2f} (center {np.round(bounds['center'], 2)})")
    print(f"Lighting: brightness {lighting.brightness:.2f}, contrast {lighting.contrast:.2f}, "
          f"{lighting.color_temperature:.0f}K")


if __name__ == '__main__':
    main()
