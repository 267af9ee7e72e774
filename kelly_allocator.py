import argparse
from copy import deepcopy
import json
import math
import sys
import time
import traceback

import numpy as np

import allocation_backend
from allocation_backend import (
    EPSILON,
    AdamOptimizer,
    AllocationParameters,
    MarketModel,
)


DEFAULT_CONFIG = {
    "market": {
        "prices": [0.45, 0.62, 0.30],
        "true_probabilities": [0.55, 0.50, 0.30],
    },
    "portfolio": {
        "initial_wealth": 1_000.0,
    },
    "optimizer": {
        "learning_rate": 0.05,
        "beta1": 0.9,
        "beta2": 0.999,
        "epsilon": 1e-7,
    },
    "simulation": {
        "iterations": 1_000,
        "batch_size": 256,
        "seed": None,
        "precision_mode": "fp32",
    },
    "reporting": {
        "warmup_iterations": 10,
        "report_every": 100,
    },
}

SUPPORTED_PRECISION_MODES = set(allocation_backend.PRECISION_DTYPES)
TERMINAL_STATUSES = {"converged", "diverged", "failed", "invalid"}

NO_POSITION_SHARES = 1e-9

LENGTH_MISMATCH_MESSAGE = (
    "Error: Market Prices and True Probabilities must have the same number of "
    "comma-separated values."
)


class OptimizationDiverged(ArithmeticError):
    def __init__(self, iteration, expected_log_return):
        self.iteration = iteration
        self.expected_log_return = expected_log_return
        super().__init__(
            f"Optimization failed at iteration {iteration}: "
            f"expected log return is not a finite number ({expected_log_return})."
        )


def _deep_merge(base, overrides):
    merged = deepcopy(base)
    _deep_merge_in_place(merged, overrides)
    return merged


def _deep_merge_in_place(target, overrides):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge_in_place(target[key], value)
        else:
            target[key] = value


def parse_csv_floats(text):
    values = []
    for token in str(text).split(","):
        token = token.strip()
        if not token:
            continue
        try:
            value = float(token)
        except ValueError:
            continue
        if math.isnan(value):
            continue
        values.append(value)
    return values


def _coerce_float_list(name, value):
    if isinstance(value, str):
        return parse_csv_floats(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return [float(value)]
    if isinstance(value, (list, tuple, np.ndarray)):
        values = []
        for item in value:
            if isinstance(item, bool) or not isinstance(item, (int, float, np.number)):
                raise ValueError(f"{name} must contain only numbers.")
            values.append(float(item))
        return values
    raise ValueError(f"{name} must be a comma-separated string or a list of numbers.")


def prepare_config(config=None):
    if config is not None and not isinstance(config, dict):
        raise ValueError("config must be a mapping of config sections.")
    merged = _deep_merge(DEFAULT_CONFIG, config or {})
    for section in DEFAULT_CONFIG:
        if not isinstance(merged.get(section), dict):
            raise ValueError(f"Config section '{section}' must be a mapping.")
    market = merged["market"]
    market["prices"] = _coerce_float_list("market.prices", market["prices"])
    market["true_probabilities"] = _coerce_float_list(
        "market.true_probabilities", market["true_probabilities"]
    )
    validate_config(merged)
    return merged


def _is_int(value):
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def _is_number(value):
    return isinstance(value, (int, float, np.number)) and not isinstance(value, bool)


def validate_config(config):
    for key in ("market", "portfolio", "optimizer", "simulation", "reporting"):
        if key not in config:
            raise ValueError(f"Missing top-level config section '{key}'.")

    market = config["market"]
    portfolio = config["portfolio"]
    optimizer = config["optimizer"]
    simulation = config["simulation"]
    reporting = config["reporting"]

    prices = market["prices"]
    true_probabilities = market["true_probabilities"]
    if len(prices) == 0 or len(true_probabilities) == 0 or len(prices) != len(true_probabilities):
        raise ValueError(LENGTH_MISMATCH_MESSAGE)
    if not all(_is_number(p) and math.isfinite(p) for p in prices):
        raise ValueError("market.prices must all be finite numbers.")
    if not all(_is_number(q) and 0.0 <= q <= 1.0 for q in true_probabilities):
        raise ValueError("market.true_probabilities must all be in [0, 1].")

    wealth = portfolio["initial_wealth"]
    if not _is_number(wealth) or not math.isfinite(wealth) or wealth <= 0:
        raise ValueError("portfolio.initial_wealth must be a finite number > 0.")

    learning_rate = optimizer["learning_rate"]
    if not _is_number(learning_rate) or not math.isfinite(learning_rate) or learning_rate <= 0:
        raise ValueError("optimizer.learning_rate must be a finite number > 0.")
    for field in ("beta1", "beta2"):
        if not _is_number(optimizer[field]) or not (0.0 <= optimizer[field] < 1.0):
            raise ValueError(f"optimizer.{field} must be in [0, 1).")
    if not _is_number(optimizer["epsilon"]) or optimizer["epsilon"] <= 0:
        raise ValueError("optimizer.epsilon must be > 0.")

    if not _is_int(simulation["iterations"]) or simulation["iterations"] <= 0:
        raise ValueError("simulation.iterations must be an int > 0.")
    if not _is_int(simulation["batch_size"]) or simulation["batch_size"] <= 0:
        raise ValueError("simulation.batch_size must be an int > 0.")
    if simulation["seed"] is not None and not _is_int(simulation["seed"]):
        raise ValueError("simulation.seed must be an int or None.")
    if simulation["precision_mode"] not in SUPPORTED_PRECISION_MODES:
        allowed = ", ".join(sorted(SUPPORTED_PRECISION_MODES))
        raise ValueError(f"simulation.precision_mode must be one of: {allowed}")

    if not _is_int(reporting["warmup_iterations"]) or reporting["warmup_iterations"] < 0:
        raise ValueError("reporting.warmup_iterations must be an int >= 0.")
    if not _is_int(reporting["report_every"]) or reporting["report_every"] <= 0:
        raise ValueError("reporting.report_every must be an int > 0.")


def format_num(value, digits=4):
    if value is None or math.isnan(value):
        return "NaN"
    return f"{value:.{digits}f}"


def format_progress_line(iteration, expected_log_return):
    return f"Iter {iteration}: Expected Log Return = {format_num(expected_log_return, 6)}"


def _should_report(iteration, iterations, reporting):
    return (
        iteration < reporting["warmup_iterations"]
        or iteration % reporting["report_every"] == 0
        or iteration == iterations - 1
    )


def iterate_training(market, params, optimizer, config, rng):
    simulation = config["simulation"]
    reporting = config["reporting"]
    initial_wealth = config["portfolio"]["initial_wealth"]
    iterations = simulation["iterations"]
    batch_size = simulation["batch_size"]

    for iteration in range(iterations):
        loss, grads = allocation_backend.evaluate_loss_and_gradient(
            params,
            market,
            initial_wealth,
            batch_size,
            rng,
        )
        optimizer.step(params, grads)

        expected_log_return = -float(loss)
        if not math.isfinite(expected_log_return):
            raise OptimizationDiverged(iteration, expected_log_return)

        if _should_report(iteration, iterations, reporting):
            yield {
                "iteration": iteration,
                "expected_log_return": expected_log_return,
                "loss": float(loss),
            }


def compile_allocation_report(params, market, initial_wealth):
    params = params.astype(np.float64)
    market = market.astype(np.float64)
    allocation = allocation_backend.compute_allocation(params, market, initial_wealth)

    n_yes = allocation["n_yes"]
    n_no = allocation["n_no"]
    canceled = np.minimum(n_yes, n_no)
    n_yes_net = n_yes - canceled
    n_no_net = n_no - canceled
    cash_from_cancel = float(np.sum(canceled))

    adjusted = market.adjusted_prices
    total_yes_cost = float(np.sum(n_yes_net * adjusted))
    total_no_cost = float(np.sum(n_no_net * (1.0 - adjusted)))
    net_capital_deployed = total_yes_cost + total_no_cost
    unallocated_cash = initial_wealth - net_capital_deployed - cash_from_cancel

    events = []
    for idx in range(market.num_events):
        yes_net = float(n_yes_net[idx])
        no_net = float(n_no_net[idx])
        if yes_net > no_net and yes_net > NO_POSITION_SHARES:
            side = "yes"
            net_shares = yes_net
            capital = yes_net * float(adjusted[idx])
            position = f"{format_num(yes_net)} Yes"
        elif no_net > NO_POSITION_SHARES:
            side = "no"
            net_shares = no_net
            capital = no_net * (1.0 - float(adjusted[idx]))
            position = f"{format_num(no_net)} No"
        else:
            side = "none"
            net_shares = 0.0
            capital = 0.0
            position = "no position"
        events.append(
            {
                "index": idx + 1,
                "side": side,
                "position": position,
                "net_shares": net_shares,
                "n_yes_net": yes_net,
                "n_no_net": no_net,
                "canceled_shares": float(canceled[idx]),
                "capital": capital,
                "alpha_yes": float(allocation["alpha_yes"][idx]),
                "alpha_no": float(allocation["alpha_no"][idx]),
            }
        )

    return {
        "initial_wealth": float(initial_wealth),
        "f_yes": float(allocation["f_yes"]),
        "f_no": float(allocation["f_no"]),
        "total_yes_cost": total_yes_cost,
        "total_no_cost": total_no_cost,
        "net_capital_deployed": net_capital_deployed,
        "cash_from_cancel": cash_from_cancel,
        "unallocated_cash": unallocated_cash,
        "events": events,
    }


def format_report_lines(report):
    lines = [
        f"Fraction to 'Yes' (f_yes):   {format_num(report['f_yes'])}",
        f"Fraction to 'No' (f_no):     {format_num(report['f_no'])}",
        f"Net Capital Deployed:        ${format_num(report['net_capital_deployed'], 2)}",
        f"Cash from Canceled Pairs:    ${format_num(report['cash_from_cancel'], 2)}",
        f"Remaining Unallocated Cash:  ${format_num(report['unallocated_cash'], 2)}",
        "",
        f"{'Event':>6} | {'Net Shares':>20} | {'Capital':>12} | {'Alpha Yes':>9} | {'Alpha No':>9}",
        "-" * 70,
    ]
    for row in report["events"]:
        lines.append(
            f"{row['index']:>6} | "
            f"{row['position']:>20} | "
            f"{'$' + format_num(row['capital'], 2):>12} | "
            f"{format_num(row['alpha_yes']):>9} | "
            f"{format_num(row['alpha_no']):>9}"
        )
    return lines


def _divergence_lines(exc):
    return [
        "",
        "--- ERROR ---",
        str(exc),
        "This is likely due to an overly large learning rate or unstable input values.",
        "Try lowering the Learning Rate or simplifying the market inputs.",
        "--- STOPPING OPTIMIZATION ---",
    ]


def run_kelly_optimization(config=None, verbose=True, progress_callback=None, rng=None):
    log_lines = []

    def log(line):
        log_lines.append(line)
        if verbose:
            print(line)

    def emit(event, payload):
        if progress_callback is not None:
            progress_callback(event, payload)

    result = {
        "status": "invalid",
        "iterations_completed": 0,
        "diverged_at": None,
        "final_expected_log_return": None,
        "history": [],
        "report": None,
        "final_parameters": None,
        "error": None,
        "traceback": None,
        "log": log_lines,
        "execution": None,
    }

    log("Starting optimization...")
    try:
        merged_config = prepare_config(config)
    except ValueError as exc:
        result["error"] = str(exc)
        log(str(exc))
        emit("run_invalid", {"error": str(exc)})
        return result

    market_cfg = merged_config["market"]
    simulation = merged_config["simulation"]
    optimizer_cfg = merged_config["optimizer"]
    initial_wealth = float(merged_config["portfolio"]["initial_wealth"])
    iterations = simulation["iterations"]

    dtype = allocation_backend.resolve_dtype(simulation["precision_mode"])
    if rng is None:
        rng = np.random.default_rng(simulation["seed"])

    execution = {
        "precision_mode": simulation["precision_mode"],
        "batch_size": simulation["batch_size"],
        "iterations_requested": iterations,
        "seed": simulation["seed"],
        "elapsed_s": None,
    }
    result["execution"] = execution

    t0 = time.perf_counter()
    optimizer = None
    try:
        market = MarketModel.from_inputs(
            market_cfg["prices"],
            market_cfg["true_probabilities"],
            dtype=dtype,
        )
        params = AllocationParameters.zeros(market.num_events, dtype=dtype)
        optimizer = AdamOptimizer(
            optimizer_cfg["learning_rate"],
            beta1=optimizer_cfg["beta1"],
            beta2=optimizer_cfg["beta2"],
            epsilon=optimizer_cfg["epsilon"],
        )

        result["status"] = "running"
        log(
            f"Model parameters: {market.num_events} events, W=${initial_wealth:g}, "
            f"LR={optimizer_cfg['learning_rate']:g}, Iterations={iterations}, "
            f"Batch Size={simulation['batch_size']}"
        )
        emit(
            "run_start",
            {
                "num_events": market.num_events,
                "initial_wealth": initial_wealth,
                "learning_rate": optimizer_cfg["learning_rate"],
                "iterations": iterations,
                "batch_size": simulation["batch_size"],
                "precision_mode": simulation["precision_mode"],
            },
        )

        for progress in iterate_training(market, params, optimizer, merged_config, rng):
            result["history"].append(
                {
                    "iteration": progress["iteration"],
                    "expected_log_return": progress["expected_log_return"],
                }
            )
            result["iterations_completed"] = progress["iteration"] + 1
            result["final_expected_log_return"] = progress["expected_log_return"]
            log(format_progress_line(progress["iteration"], progress["expected_log_return"]))
            emit("iteration_progress", dict(progress, iterations=iterations))

        log("Optimization finished successfully.")
        report = compile_allocation_report(params, market, initial_wealth)
        result["report"] = report
        result["final_parameters"] = params.to_dict()
        result["iterations_completed"] = iterations
        result["status"] = "converged"
        if verbose:
            print()
            for line in format_report_lines(report):
                print(line)
        emit(
            "run_complete",
            {
                "f_yes": report["f_yes"],
                "f_no": report["f_no"],
                "net_capital_deployed": report["net_capital_deployed"],
                "unallocated_cash": report["unallocated_cash"],
            },
        )
    except OptimizationDiverged as exc:
        result["status"] = "diverged"
        result["diverged_at"] = exc.iteration
        result["iterations_completed"] = exc.iteration + 1
        result["error"] = str(exc)
        for line in _divergence_lines(exc):
            log(line)
        emit("run_diverged", {"iteration": exc.iteration, "error": str(exc)})
    except Exception as exc:
        result["status"] = "failed"
        result["report"] = None
        result["error"] = str(exc)
        result["traceback"] = traceback.format_exc()
        log(f"An unexpected error occurred: {exc}")
        emit("run_failed", {"error": str(exc)})
    finally:
        if optimizer is not None:
            optimizer.release()
        execution["elapsed_s"] = time.perf_counter() - t0

    return result


def _build_overrides(args):
    overrides = {}

    def put(section, key, value):
        if value is not None:
            overrides.setdefault(section, {})[key] = value

    put("market", "prices", args.prices)
    put("market", "true_probabilities", args.true_probs)
    put("portfolio", "initial_wealth", args.wealth)
    put("optimizer", "learning_rate", args.learning_rate)
    put("simulation", "iterations", args.iterations)
    put("simulation", "batch_size", args.batch_size)
    put("simulation", "seed", args.seed)
    put("simulation", "precision_mode", args.precision_mode)
    return overrides


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Multi-market Kelly allocation via stochastic gradient ascent on expected log wealth."
    )
    parser.add_argument("--prices", help="Comma-separated market prices, e.g. 0.45,0.62")
    parser.add_argument("--true-probs", help="Comma-separated true outcome probabilities.")
    parser.add_argument("--wealth", type=float)
    parser.add_argument("--learning-rate", type=float)
    parser.add_argument("--iterations", type=int)
    parser.add_argument("--batch-size", type=int)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--precision-mode", choices=sorted(SUPPORTED_PRECISION_MODES))
    parser.add_argument("--json", action="store_true", help="Print the result as JSON.")
    args = parser.parse_args(argv)

    result = run_kelly_optimization(config=_build_overrides(args), verbose=not args.json)
    if args.json:
        print(json.dumps(result, indent=2, default=float))
    return 0 if result["status"] == "converged" else 1


if __name__ == "__main__":
    sys.exit(main())
