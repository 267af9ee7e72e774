#!/usr/bin/env python3
import argparse
from pathlib import Path
import sys
import time

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from kelly_allocator import SUPPORTED_PRECISION_MODES, run_kelly_optimization


def run_case(name, config):
    t0 = time.perf_counter()
    result = run_kelly_optimization(config=config, verbose=False)
    elapsed = time.perf_counter() - t0
    print(f"\n{name}")
    print(f"  elapsed_s:             {elapsed:.3f}")
    print(f"  status:                {result['status']}")
    if result["status"] != "converged":
        print(f"  error:                 {result['error']}")
        return None, result

    iterations = result["execution"]["iterations_requested"]
    report = result["report"]
    print(f"  ms_per_iteration:      {elapsed * 1000.0 / iterations:.3f}")
    print(f"  expected_log_return:   {result['final_expected_log_return']:.6f}")
    print(f"  f_yes:                 {report['f_yes']:.4f}")
    print(f"  net_capital_deployed:  {report['net_capital_deployed']:.2f}")
    return elapsed, result


def main():
    parser = argparse.ArgumentParser(description="Benchmark batch sizes and precision modes.")
    parser.add_argument("--prices", default="0.45,0.62,0.30,0.15,0.80")
    parser.add_argument("--true-probs", default="0.55,0.50,0.30,0.20,0.75")
    parser.add_argument("--iterations", type=int, default=500)
    parser.add_argument("--batch-sizes", default="64,256,1024,4096")
    parser.add_argument("--seed", type=int, default=123)
    args = parser.parse_args()

    batch_sizes = [int(token) for token in args.batch_sizes.split(",") if token.strip()]
    timings = {}
    for precision_mode in sorted(SUPPORTED_PRECISION_MODES):
        for batch_size in batch_sizes:
            config = {
                "market": {
                    "prices": args.prices,
                    "true_probabilities": args.true_probs,
                },
                "simulation": {
                    "iterations": args.iterations,
                    "batch_size": batch_size,
                    "seed": args.seed,
                    "precision_mode": precision_mode,
                },
            }
            elapsed, _ = run_case(f"{precision_mode} / batch {batch_size}", config)
            timings[(precision_mode, batch_size)] = elapsed

    print()
    for batch_size in batch_sizes:
        fp32 = timings.get(("fp32", batch_size))
        fp64 = timings.get(("fp64", batch_size))
        if fp32 and fp64:
            print(f"Batch {batch_size:>6}: fp64/fp32 time ratio {fp64 / fp32:.2f}x")


if __name__ == "__main__":
    main()
