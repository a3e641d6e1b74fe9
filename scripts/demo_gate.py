"""
Face Gate Demo Script - Enrollment then Verification

This script runs the whole gate from a terminal with the local webcam:
1. Enrollment: hold capture for a few seconds, samples are taken once per
   interval until the maximum is reached
2. Optional: save the reference set to the reference store
3. Verification: press ENTER to capture, repeat after a failed match

Usage:
    python scripts/demo_gate.py --passenger-id PAX-0001
    python scripts/demo_gate.py --passenger-id PAX-0001 --mode defer --save
    python scripts/demo_gate.py --passenger-id PAX-0001 --verify-only

Controls (during verification):
    - Press ENTER to capture
    - Type 'q' then ENTER to quit
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from facegate.camera import CameraConfig, OpenCVFrameSource
from facegate.config import get_camera_config, get_config
from facegate.descriptors import ReferenceSet
from facegate.errors import FaceGateError
from facegate.gate import FaceGate, get_embedder
from facegate.reference_store import get_reference_store

logger = logging.getLogger(__name__)


def print_banner(title: str) -> None:
    print()
    print("=" * 60)
    print(f"  {title}")
    print("=" * 60)


async def enroll(gate: FaceGate, args: argparse.Namespace) -> ReferenceSet:
    """Capture samples for --hold-sec seconds and finalize."""
    session = gate.begin_enrollment(max_samples=args.max_samples, mode=args.mode)
    session.on_samples_changed(lambda count, limit: print(f"  Captured {count}/{limit}"))

    async with session:
        await session.start()
        await asyncio.to_thread(input, "  Face the camera and press ENTER to start capturing...")

        await session.hold_begin()
        await asyncio.sleep(args.hold_sec)
        await session.hold_end()

        return await session.finalize()


async def verify(gate: FaceGate, reference_set: ReferenceSet) -> bool:
    """Capture until a match is found or the user quits."""
    session = gate.begin_verification(reference_set)
    session.on_verdict(lambda verdict: print(f"  {verdict.message}"))

    async with session:
        await session.start()
        while True:
            answer = await asyncio.to_thread(input, "  Press ENTER to capture ('q' to quit): ")
            if answer.strip().lower() == "q":
                return False

            verdict = await session.capture()
            if verdict is not None and verdict.is_valid:
                # Let the session release the camera after its grace delay
                await asyncio.sleep(session.grace_delay_sec)
                return True


async def run(args: argparse.Namespace) -> int:
    config = get_config()
    camera_config = CameraConfig.from_dict(get_camera_config())
    if args.device_id is not None:
        camera_config.device_id = args.device_id

    gate = FaceGate(OpenCVFrameSource(camera_config), get_embedder(), config=config)
    store = get_reference_store()

    if args.verify_only:
        reference_set = store.load_reference_set(args.passenger_id)
        if reference_set is None:
            print(f"\nERROR: Passenger {args.passenger_id} is not enrolled.")
            return 1
    else:
        print_banner(f"ENROLLMENT: {args.passenger_id}")
        try:
            reference_set = await enroll(gate, args)
        except FaceGateError as e:
            print(f"\nERROR: {e}")
            return 1
        print(f"  Reference set: {len(reference_set.descriptors)} descriptors, "
              f"{len(reference_set.images)} images")

        if args.save:
            path = store.save_reference_set(
                args.passenger_id,
                reference_set,
                passenger_name=args.passenger_name,
                overwrite=True,
            )
            print(f"  Saved to {path}")

    print_banner(f"VERIFICATION: {args.passenger_id}")
    try:
        verified = await verify(gate, reference_set)
    except FaceGateError as e:
        print(f"\nERROR: {e}")
        return 1

    print_banner("VERIFIED" if verified else "NOT VERIFIED")
    return 0 if verified else 2


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Enroll a face from the webcam, then verify it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--passenger-id", type=str, required=True,
        help="Passenger identifier (required)",
    )
    parser.add_argument(
        "--passenger-name", type=str, default="",
        help="Display name stored with the enrollment",
    )
    parser.add_argument(
        "--mode", type=str, choices=["embed", "defer"], default=None,
        help="Capture mode (default: from config.yaml)",
    )
    parser.add_argument(
        "--max-samples", type=int, default=None,
        help="Maximum samples to capture (default: from config.yaml)",
    )
    parser.add_argument(
        "--hold-sec", type=float, default=6.0,
        help="How long to hold the capture action (default: 6.0)",
    )
    parser.add_argument(
        "--device-id", type=int, default=None,
        help="Camera device index (default: from config.yaml)",
    )
    parser.add_argument(
        "--save", action="store_true",
        help="Save the enrollment to the reference store",
    )
    parser.add_argument(
        "--verify-only", action="store_true",
        help="Skip enrollment and verify against the stored reference set",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
