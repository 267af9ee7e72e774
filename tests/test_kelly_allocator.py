import math
from pathlib import Path
import sys

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import allocation_backend
import kelly_allocator as optimizer


def _base_config(prices="0.5", true_probabilities="0.5", **simulation):
    config = {
        "market": {
            "prices": prices,
            "true_probabilities": true_probabilities,
        },
        "portfolio": {
            "initial_wealth": 100.0,
        },
        "optimizer": {
            "learning_rate": 0.05,
        },
        "simulation": {
            "iterations": 200,
            "batch_size": 256,
            "seed": 123,
        },
    }
    config["simulation"].update(simulation)
    return config


def _assert_accounting_balances(report):
    total = report["net_capital_deployed"] + report["cash_from_cancel"] + report["unallocated_cash"]
    assert math.isclose(total, report["initial_wealth"], rel_tol=0.0, abs_tol=1e-4)
    for row in report["events"]:
        assert row["n_yes_net"] * row["n_no_net"] == 0.0


def test_parse_csv_floats_drops_unparseable_tokens():
    assert optimizer.parse_csv_floats("0.3, 0.5,abc, ,0.7,nan") == [0.3, 0.5, 0.7]
    assert optimizer.parse_csv_floats("") == []


def test_prepare_config_accepts_csv_strings_and_lists():
    config = optimizer.prepare_config(
        {"market": {"prices": "0.2, 0.4", "true_probabilities": [0.3, 0.5]}}
    )
    assert config["market"]["prices"] == [0.2, 0.4]
    assert config["market"]["true_probabilities"] == [0.3, 0.5]
    assert config["simulation"]["batch_size"] == optimizer.DEFAULT_CONFIG["simulation"]["batch_size"]


def test_default_config_is_valid_and_not_mutated_by_merge():
    optimizer.validate_config(optimizer.prepare_config())
    merged = optimizer._deep_merge(optimizer.DEFAULT_CONFIG, {"simulation": {"iterations": 3}})
    assert merged["simulation"]["iterations"] == 3
    assert optimizer.DEFAULT_CONFIG["simulation"]["iterations"] == 1_000


@pytest.mark.parametrize(
    "override,match",
    [
        ({"market": {"prices": [0.5, 0.4], "true_probabilities": [0.5]}}, "same number"),
        ({"market": {"prices": [], "true_probabilities": [0.5]}}, "same number"),
        ({"market": {"prices": "abc", "true_probabilities": "0.5"}}, "same number"),
        ({"market": {"prices": [float("inf")], "true_probabilities": [0.5]}}, "finite"),
        ({"market": {"prices": [0.5], "true_probabilities": [1.5]}}, r"\[0, 1\]"),
        ({"market": {"prices": [0.5, "x"], "true_probabilities": [0.5, 0.5]}}, "only numbers"),
        ({"portfolio": {"initial_wealth": 0.0}}, "initial_wealth"),
        ({"optimizer": {"learning_rate": -0.1}}, "learning_rate"),
        ({"optimizer": {"beta1": 1.0}}, "beta1"),
        ({"optimizer": {"epsilon": 0.0}}, "epsilon"),
        ({"simulation": {"iterations": 0}}, "iterations"),
        ({"simulation": {"iterations": 10.5}}, "iterations"),
        ({"simulation": {"batch_size": True}}, "batch_size"),
        ({"simulation": {"seed": "abc"}}, "seed"),
        ({"simulation": {"precision_mode": "fp16"}}, "precision_mode"),
        ({"reporting": {"report_every": 0}}, "report_every"),
        ({"reporting": "loud"}, "must be a mapping"),
    ],
)
def test_prepare_config_rejects_invalid_settings(override, match):
    with pytest.raises(ValueError, match=match):
        optimizer.prepare_config(override)


@pytest.mark.parametrize(
    "prices,true_probabilities",
    [
        ("0.5,0.4", "0.5"),
        ("", "0.5"),
        ("0.5", ""),
    ],
)
def test_invalid_inputs_are_rejected_before_any_state_exists(monkeypatch, prices, true_probabilities):
    created = []

    def fake_zeros(cls, num_events, dtype=np.float64):
        created.append(num_events)
        raise AssertionError("parameters must not be created for invalid input")

    monkeypatch.setattr(optimizer.AllocationParameters, "zeros", classmethod(fake_zeros))
    events = []

    result = optimizer.run_kelly_optimization(
        config=_base_config(prices=prices, true_probabilities=true_probabilities),
        verbose=False,
        progress_callback=lambda event, payload: events.append(event),
    )

    assert result["status"] == "invalid"
    assert result["report"] is None
    assert result["history"] == []
    assert created == []
    assert events == ["run_invalid"]
    assert optimizer.LENGTH_MISMATCH_MESSAGE in result["log"]


def test_report_cadence_covers_warmup_hundreds_and_last_iteration():
    result = optimizer.run_kelly_optimization(
        config=_base_config(iterations=250, batch_size=32),
        verbose=False,
    )

    assert result["status"] == "converged"
    reported = [entry["iteration"] for entry in result["history"]]
    assert reported == list(range(10)) + [100, 200, 249]
    assert result["iterations_completed"] == 250
    assert result["log"][-1] == "Optimization finished successfully."
    assert "Iter 249: Expected Log Return = " in result["log"][-2]


def test_progress_lines_use_six_decimal_precision():
    result = optimizer.run_kelly_optimization(
        config=_base_config(iterations=3, batch_size=16),
        verbose=False,
    )
    iteration_lines = [line for line in result["log"] if line.startswith("Iter ")]
    assert len(iteration_lines) == 3
    for line, entry in zip(iteration_lines, result["history"]):
        assert line.endswith(f"{entry['expected_log_return']:.6f}")


def test_simplex_constraints_hold_after_every_step():
    config = optimizer.prepare_config(
        _base_config(prices="0.2,0.5,0.9", true_probabilities="0.4,0.5,0.7", iterations=60)
    )
    config["reporting"]["report_every"] = 1
    market = allocation_backend.MarketModel.from_inputs(
        config["market"]["prices"], config["market"]["true_probabilities"], dtype=np.float32
    )
    params = allocation_backend.AllocationParameters.zeros(market.num_events, dtype=np.float32)
    adam = allocation_backend.AdamOptimizer(config["optimizer"]["learning_rate"])
    rng = np.random.default_rng(0)

    steps = 0
    for _ in optimizer.iterate_training(market, params, adam, config, rng):
        allocation = allocation_backend.compute_allocation(params, market, 100.0)
        assert math.isclose(float(allocation["f_yes"] + allocation["f_no"]), 1.0, abs_tol=1e-5)
        assert math.isclose(float(np.sum(allocation["alpha_yes"])), 1.0, abs_tol=1e-5)
        assert math.isclose(float(np.sum(allocation["alpha_no"])), 1.0, abs_tol=1e-5)
        steps += 1
    assert steps == 60
    assert adam.step_count == 60


def test_compile_report_nets_out_hedged_pairs():
    market = allocation_backend.MarketModel.from_inputs([0.5], [0.5])
    params = allocation_backend.AllocationParameters.zeros(1)
    report = optimizer.compile_allocation_report(params, market, 100.0)

    row = report["events"][0]
    assert row["side"] == "none"
    assert row["position"] == "no position"
    assert row["capital"] == 0.0
    assert math.isclose(report["cash_from_cancel"], 100.0)
    assert math.isclose(report["net_capital_deployed"], 0.0, abs_tol=1e-12)
    _assert_accounting_balances(report)


def test_compile_report_keeps_only_the_dominant_side():
    market = allocation_backend.MarketModel.from_inputs([0.3, 0.7], [0.5, 0.5])
    params = allocation_backend.AllocationParameters.zeros(2)
    report = optimizer.compile_allocation_report(params, market, 100.0)

    # Zero logits: 25 of wealth per side per event.
    yes_row, no_row = report["events"]
    assert yes_row["side"] == "yes"
    assert math.isclose(yes_row["net_shares"], 25.0 / 0.3 - 25.0 / 0.7)
    assert math.isclose(yes_row["capital"], yes_row["net_shares"] * 0.3)
    assert yes_row["n_no_net"] == 0.0
    assert no_row["side"] == "no"
    assert math.isclose(no_row["net_shares"], 25.0 / 0.3 - 25.0 / 0.7)
    assert no_row["n_yes_net"] == 0.0
    assert math.isclose(report["f_yes"], 0.5)
    assert math.isclose(yes_row["alpha_yes"], 0.5)
    _assert_accounting_balances(report)


def test_compile_report_uses_clipped_price_for_capital():
    market = allocation_backend.MarketModel.from_inputs([0.0], [0.5])
    params = allocation_backend.AllocationParameters.zeros(1)
    report = optimizer.compile_allocation_report(params, market, 100.0)

    row = report["events"][0]
    assert row["side"] == "yes"
    assert math.isfinite(row["capital"])
    assert math.isclose(row["capital"], 50.0 - 50.0 * allocation_backend.EPSILON / (1.0 - allocation_backend.EPSILON), rel_tol=1e-9)
    _assert_accounting_balances(report)


def test_fair_coin_at_fair_price_has_no_edge():
    config = _base_config(prices="0.5", true_probabilities="0.5", iterations=50, batch_size=256)
    result = optimizer.run_kelly_optimization(config=config, verbose=False)

    assert result["status"] == "converged"
    assert abs(result["final_expected_log_return"]) < 0.15
    report = result["report"]
    assert report["net_capital_deployed"] < 0.5 * report["initial_wealth"]
    _assert_accounting_balances(report)


def test_underpriced_event_gets_a_yes_position():
    result = optimizer.run_kelly_optimization(
        config=_base_config(prices="0.3", true_probabilities="0.6"),
        verbose=False,
    )

    assert result["status"] == "converged"
    row = result["report"]["events"][0]
    assert row["side"] == "yes"
    assert row["n_yes_net"] > 0.0
    assert row["n_no_net"] == 0.0
    assert row["capital"] > 0.0
    assert result["final_expected_log_return"] > 0.0
    _assert_accounting_balances(result["report"])


def test_overpriced_event_gets_a_no_position():
    result = optimizer.run_kelly_optimization(
        config=_base_config(prices="0.7", true_probabilities="0.4"),
        verbose=False,
    )

    assert result["status"] == "converged"
    row = result["report"]["events"][0]
    assert row["side"] == "no"
    assert row["n_no_net"] > 0.0
    assert row["n_yes_net"] == 0.0
    _assert_accounting_balances(result["report"])


def test_multi_event_run_balances_and_never_holds_both_sides():
    result = optimizer.run_kelly_optimization(
        config=_base_config(
            prices="0.45,0.62,0.30,0.0,1.0",
            true_probabilities="0.55,0.50,0.30,0.2,0.9",
            iterations=150,
            precision_mode="fp64",
        ),
        verbose=False,
    )

    assert result["status"] == "converged"
    report = result["report"]
    assert len(report["events"]) == 5
    assert [row["index"] for row in report["events"]] == [1, 2, 3, 4, 5]
    assert math.isclose(report["f_yes"] + report["f_no"], 1.0, abs_tol=1e-9)
    assert math.isclose(sum(row["alpha_yes"] for row in report["events"]), 1.0, abs_tol=1e-9)
    _assert_accounting_balances(report)


@pytest.mark.parametrize("seed", [0, 7, 42])
def test_extreme_learning_rate_diverges_and_skips_report(seed):
    config = _base_config(
        prices="0.5,0.5",
        true_probabilities="0.5,0.5",
        iterations=100,
        seed=seed,
    )
    config["optimizer"]["learning_rate"] = 50.0
    events = []

    result = optimizer.run_kelly_optimization(
        config=config,
        verbose=False,
        progress_callback=lambda event, payload: events.append((event, payload)),
    )

    assert result["status"] == "diverged"
    assert result["report"] is None
    assert result["diverged_at"] is not None
    assert result["diverged_at"] < 100
    assert all(entry["iteration"] < result["diverged_at"] for entry in result["history"])
    assert "--- STOPPING OPTIMIZATION ---" in result["log"]
    assert any("overly large learning rate" in line for line in result["log"])
    assert events[-1][0] == "run_diverged"
    assert events[-1][1]["iteration"] == result["diverged_at"]


def test_iterate_training_raises_at_the_divergent_iteration(monkeypatch):
    calls = []
    real_evaluate = allocation_backend.evaluate_loss_and_gradient

    def flaky_evaluate(params, market, initial_wealth, batch_size, rng):
        loss, grads = real_evaluate(params, market, initial_wealth, batch_size, rng)
        calls.append(len(calls))
        if len(calls) == 5:
            return np.float32(np.nan), grads
        return loss, grads

    monkeypatch.setattr(allocation_backend, "evaluate_loss_and_gradient", flaky_evaluate)
    result = optimizer.run_kelly_optimization(config=_base_config(iterations=20), verbose=False)

    assert result["status"] == "diverged"
    assert result["diverged_at"] == 4
    assert result["iterations_completed"] == 5
    assert len(calls) == 5
    assert [entry["iteration"] for entry in result["history"]] == [0, 1, 2, 3]


def test_unexpected_error_marks_run_failed_and_releases_state(monkeypatch):
    released = []
    real_release = allocation_backend.AdamOptimizer.release

    def tracking_release(self):
        released.append(self.step_count)
        real_release(self)

    def broken_evaluate(*args, **kwargs):
        raise FloatingPointError("boom")

    monkeypatch.setattr(allocation_backend.AdamOptimizer, "release", tracking_release)
    monkeypatch.setattr(allocation_backend, "evaluate_loss_and_gradient", broken_evaluate)
    events = []

    result = optimizer.run_kelly_optimization(
        config=_base_config(iterations=20),
        verbose=False,
        progress_callback=lambda event, payload: events.append(event),
    )

    assert result["status"] == "failed"
    assert result["error"] == "boom"
    assert result["report"] is None
    assert "An unexpected error occurred: boom" in result["log"]
    assert "FloatingPointError" in result["traceback"]
    assert released == [0]
    assert events == ["run_start", "run_failed"]


def test_state_is_released_after_convergence_and_divergence(monkeypatch):
    released = []
    real_release = allocation_backend.AdamOptimizer.release

    def tracking_release(self):
        released.append(self.step_count)
        real_release(self)

    monkeypatch.setattr(allocation_backend.AdamOptimizer, "release", tracking_release)
    optimizer.run_kelly_optimization(config=_base_config(iterations=5), verbose=False)
    diverging = _base_config(prices="0.5,0.5", true_probabilities="0.5,0.5", iterations=100)
    diverging["optimizer"]["learning_rate"] = 50.0
    result = optimizer.run_kelly_optimization(config=diverging, verbose=False)

    assert released[0] == 5
    assert released[1] == result["diverged_at"] + 1
    assert released[1] == result["iterations_completed"]


def test_progress_callback_emits_core_lifecycle_events():
    events = []
    result = optimizer.run_kelly_optimization(
        config=_base_config(iterations=12, batch_size=16),
        verbose=False,
        progress_callback=lambda event, payload: events.append((event, payload)),
    )

    assert result["status"] == "converged"
    names = [name for name, _ in events]
    assert names[0] == "run_start"
    assert names[-1] == "run_complete"
    assert names.count("iteration_progress") == len(result["history"]) == 11
    first_progress = events[1][1]
    assert first_progress["iteration"] == 0
    assert first_progress["iterations"] == 12
    assert events[0][1]["num_events"] == 1


def test_same_seed_reproduces_trajectory():
    config = _base_config(prices="0.4,0.6", true_probabilities="0.5,0.5", iterations=40)
    first = optimizer.run_kelly_optimization(config=config, verbose=False)
    second = optimizer.run_kelly_optimization(config=config, verbose=False)

    assert first["history"] == second["history"]
    assert first["final_parameters"] == second["final_parameters"]


def test_injected_generator_overrides_seed():
    config = _base_config(iterations=5)
    first = optimizer.run_kelly_optimization(config=config, verbose=False, rng=np.random.default_rng(99))
    second = optimizer.run_kelly_optimization(config=config, verbose=False, rng=np.random.default_rng(99))
    seeded = optimizer.run_kelly_optimization(config=config, verbose=False)

    assert first["history"] == second["history"]
    assert first["history"] != seeded["history"]


def test_verbose_run_prints_report_table(capsys):
    result = optimizer.run_kelly_optimization(
        config=_base_config(prices="0.3,0.7", true_probabilities="0.6,0.4", iterations=5),
        verbose=True,
    )
    out = capsys.readouterr().out

    assert result["status"] == "converged"
    assert "Starting optimization..." in out
    assert "Fraction to 'Yes' (f_yes):" in out
    assert "Remaining Unallocated Cash:" in out
    rows = [line.strip() for line in out.splitlines()]
    assert any(line.startswith("1 |") and "Yes" in line for line in rows)
    assert any(line.startswith("2 |") and "No" in line for line in rows)


def test_format_report_lines_formats_money_and_fractions():
    report = {
        "f_yes": 0.612345,
        "f_no": 0.387655,
        "net_capital_deployed": 41.23456,
        "cash_from_cancel": 58.7,
        "unallocated_cash": 0.0654,
        "events": [
            {
                "index": 1,
                "position": "12.5000 Yes",
                "capital": 3.75,
                "alpha_yes": 1.0,
                "alpha_no": 1.0,
            }
        ],
    }
    lines = optimizer.format_report_lines(report)

    assert lines[0].endswith("0.6123")
    assert lines[1].endswith("0.3877")
    assert lines[2].endswith("$41.23")
    assert lines[3].endswith("$58.70")
    assert lines[4].endswith("$0.07")
    assert "12.5000 Yes" in lines[-1]
    assert "$3.75" in lines[-1]


def test_format_num_handles_nan():
    assert optimizer.format_num(float("nan")) == "NaN"
    assert optimizer.format_num(1.23456, 2) == "1.23"


def test_main_returns_exit_status_from_run(capsys):
    ok = optimizer.main(
        ["--prices", "0.3", "--true-probs", "0.6", "--iterations", "5", "--seed", "1", "--json"]
    )
    out = capsys.readouterr().out
    assert ok == 0
    assert '"status": "converged"' in out

    bad = optimizer.main(["--prices", "0.3,0.4", "--true-probs", "0.6", "--json"])
    capsys.readouterr()
    assert bad == 1
