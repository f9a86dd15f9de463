"""Inference Toolkit CLI for classifying images and benchmarking models.

Usage:
    python toolkit.py classify --model models/classifier.onnx --labels labels.json --image cat.png
    python toolkit.py benchmark --model models/classifier.onnx --iterations 200
    python toolkit.py info
"""

from __future__ import annotations

import argparse
import sys
import time

import numpy as np
from loguru import logger

from inference_toolkit.config import Settings
from inference_toolkit.logging_config import setup_logging
from inference_toolkit.types import BackendType

BACKEND_CHOICES = [b.value for b in BackendType]


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="toolkit",
        description="Inference Toolkit: model runner and image classifier CLI",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # ---- classify ----
    classify_parser = subparsers.add_parser("classify", help="Classify an image")
    classify_parser.add_argument("--model", type=str, required=True, help="Path to ONNX model")
    classify_parser.add_argument("--labels", type=str, required=True, help="Path to labels JSON")
    classify_parser.add_argument("--image", type=str, required=True, help="Path to input image")
    classify_parser.add_argument("--backend", type=str, choices=BACKEND_CHOICES, default="auto")
    classify_parser.add_argument("--channels-last", action="store_true", help="Use NHWC tensors")
    classify_parser.add_argument("--top-k", type=int, default=5, help="Number of results to print")

    # ---- benchmark ----
    bench_parser = subparsers.add_parser("benchmark", help="Benchmark model latency")
    bench_parser.add_argument("--model", type=str, required=True, help="Path to ONNX model")
    bench_parser.add_argument("--iterations", type=int, default=100, help="Number of iterations")
    bench_parser.add_argument("--backend", type=str, choices=BACKEND_CHOICES, default="auto")

    # ---- info ----
    subparsers.add_parser("info", help="Show platform information")

    args = parser.parse_args(argv)
    setup_logging()

    if args.command == "classify":
        cmd_classify(args)
    elif args.command == "benchmark":
        cmd_benchmark(args)
    elif args.command == "info":
        cmd_info()


def cmd_classify(args: argparse.Namespace) -> None:
    """Classify a single image file."""
    import cv2

    from inference_toolkit.runner.classifier import MultiClassImageClassifier

    image = cv2.imread(args.image, cv2.IMREAD_COLOR)
    if image is None:
        logger.error(f"Cannot read image: {args.image}")
        sys.exit(1)
    image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    settings = Settings(
        model_path=args.model,
        labels_path=args.labels,
        backend=args.backend,
        use_nchw=not args.channels_last,
        async_readback_enabled=False,
    )

    with MultiClassImageClassifier.from_settings(settings) as classifier:
        if not classifier.is_ready:
            logger.error("Classifier failed to start; see errors above.")
            sys.exit(1)
        results = classifier.classify(image, top_k=args.top_k)

    print("\n=== PREDICTIONS ===")
    for result in results:
        print(f"  {result.class_id:>4}  {result.label:<30} {result.confidence:.2%}")


def cmd_benchmark(args: argparse.Namespace) -> None:
    """Benchmark raw execute latency on a zero input."""
    from inference_toolkit.runner.model_runner import ModelRunner

    with ModelRunner() as runner:
        runner.configure(args.model, args.backend)
        runner.start()

        shape = runner.graph.input_shape() or []
        dims = [d if isinstance(d, int) and d > 0 else 1 for d in shape]
        dummy = np.zeros(dims, dtype=np.float32)

        runner.execute(dummy)  # warm-up
        latencies = []
        for _ in range(args.iterations):
            t_start = time.perf_counter()
            runner.execute(dummy)
            latencies.append((time.perf_counter() - t_start) * 1000.0)

        summary = runner.summary()

    arr = np.array(latencies)
    print(f"\n=== LATENCY BENCHMARK ===\n  {summary}")
    print(f"  mean_ms: {arr.mean():.3f}")
    print(f"  p50_ms: {np.percentile(arr, 50):.3f}")
    print(f"  p95_ms: {np.percentile(arr, 95):.3f}")
    print(f"  max_ms: {arr.max():.3f}")


def cmd_info() -> None:
    """Show platform information."""
    import platform

    import onnxruntime as ort

    from inference_toolkit.engine.platform import PlatformInfo, resolve_backend
    from inference_toolkit.types import BackendSelection

    info = PlatformInfo.detect()
    auto = resolve_backend(BackendSelection(), info)

    print(f"""
Inference Toolkit
══════════════════════════════════════════════
  Python:        {platform.python_version()}
  Platform:      {platform.system()} {platform.machine()}
  ONNX Runtime:  {ort.__version__}
  Providers:     {list(info.available_providers)}
  Auto backend:  {auto.backend.value}
  Async readback:{info.supports_async_readback}
""")


if __name__ == "__main__":
    main()
