from dataclasses import dataclass

import numpy as np


EPSILON = 1e-6

PARAMETER_GROUPS = ("theta_yes", "theta_no", "phi_yes", "phi_no")

PRECISION_DTYPES = {
    "fp32": np.float32,
    "fp64": np.float64,
}


class AllocationBackendError(RuntimeError):
    pass


def resolve_dtype(precision_mode):
    try:
        return PRECISION_DTYPES[precision_mode]
    except KeyError as exc:
        allowed = ", ".join(sorted(PRECISION_DTYPES))
        raise AllocationBackendError(
            f"Unsupported precision mode {precision_mode!r}; expected one of: {allowed}"
        ) from exc


def _read_only(values, dtype):
    arr = np.array(values, dtype=dtype)
    arr.setflags(write=False)
    return arr


def _clip_bounds(dtype):
    # Nearest representable bounds that still lie inside [EPSILON, 1 - EPSILON].
    lo = np.asarray(EPSILON, dtype=dtype)
    if float(lo) < EPSILON:
        lo = np.nextafter(lo, np.asarray(1.0, dtype=dtype))
    hi = np.asarray(1.0 - EPSILON, dtype=dtype)
    if float(hi) > 1.0 - EPSILON:
        hi = np.nextafter(hi, np.asarray(0.0, dtype=dtype))
    return lo, hi


def _clipped(prices, dtype):
    lo, hi = _clip_bounds(dtype)
    return _read_only(np.clip(np.asarray(prices, dtype=dtype), lo, hi), dtype)


@dataclass(frozen=True)
class MarketModel:
    prices: np.ndarray
    adjusted_prices: np.ndarray
    true_probabilities: np.ndarray

    @classmethod
    def from_inputs(cls, prices, true_probabilities, dtype=np.float64):
        prices = np.asarray(prices, dtype=np.float64).reshape(-1)
        true_probabilities = np.asarray(true_probabilities, dtype=np.float64).reshape(-1)
        if prices.size == 0 or true_probabilities.size == 0:
            raise ValueError("Market prices and true probabilities must be non-empty.")
        if prices.size != true_probabilities.size:
            raise ValueError(
                "Market prices and true probabilities must have the same length "
                f"(got {prices.size} and {true_probabilities.size})."
            )
        return cls(
            prices=_read_only(prices, dtype),
            adjusted_prices=_clipped(prices, dtype),
            true_probabilities=_read_only(true_probabilities, dtype),
        )

    @property
    def num_events(self):
        return int(self.prices.size)

    @property
    def dtype(self):
        return self.prices.dtype

    def astype(self, dtype):
        return MarketModel(
            prices=_read_only(self.prices, dtype),
            adjusted_prices=_clipped(self.prices, dtype),
            true_probabilities=_read_only(self.true_probabilities, dtype),
        )


@dataclass
class AllocationParameters:
    theta_yes: np.ndarray
    theta_no: np.ndarray
    phi_yes: np.ndarray
    phi_no: np.ndarray

    @classmethod
    def zeros(cls, num_events, dtype=np.float64):
        if num_events < 1:
            raise AllocationBackendError("Allocation parameters need at least one event.")
        return cls(
            theta_yes=np.zeros((), dtype=dtype),
            theta_no=np.zeros((), dtype=dtype),
            phi_yes=np.zeros(num_events, dtype=dtype),
            phi_no=np.zeros(num_events, dtype=dtype),
        )

    @property
    def num_events(self):
        return int(self.phi_yes.size)

    @property
    def dtype(self):
        return self.phi_yes.dtype

    def groups(self):
        return {name: getattr(self, name) for name in PARAMETER_GROUPS}

    def astype(self, dtype):
        return AllocationParameters(
            **{name: np.array(values, dtype=dtype) for name, values in self.groups().items()}
        )

    def to_dict(self):
        return {
            "theta_yes": float(self.theta_yes),
            "theta_no": float(self.theta_no),
            "phi_yes": [float(x) for x in self.phi_yes],
            "phi_no": [float(x) for x in self.phi_no],
        }


def _softmax(logits):
    # Unshifted on purpose: a runaway logit must overflow to a non-finite loss.
    exp_logits = np.exp(logits)
    return exp_logits / np.sum(exp_logits)


def _softmax_backward(weights, grad_weights):
    return weights * (grad_weights - np.sum(weights * grad_weights))


def _check_shapes(params, market):
    if params.num_events != market.num_events:
        raise AllocationBackendError(
            f"Parameter vectors cover {params.num_events} events but the market has "
            f"{market.num_events}."
        )


def compute_allocation(params, market, initial_wealth):
    _check_shapes(params, market)
    thetas = np.stack([params.theta_yes, params.theta_no])
    fractions = _softmax(thetas)
    f_yes = fractions[0]
    f_no = fractions[1]
    alpha_yes = _softmax(params.phi_yes)
    alpha_no = _softmax(params.phi_no)
    adjusted = market.adjusted_prices
    n_yes = alpha_yes * f_yes * initial_wealth / adjusted
    n_no = alpha_no * f_no * initial_wealth / (1.0 - adjusted)
    return {
        "fractions": fractions,
        "f_yes": f_yes,
        "f_no": f_no,
        "alpha_yes": alpha_yes,
        "alpha_no": alpha_no,
        "n_yes": n_yes,
        "n_no": n_no,
    }


def sample_outcomes(market, batch_size, rng):
    draws = rng.random((int(batch_size), market.num_events))
    return (draws < market.true_probabilities).astype(market.dtype)


def loss_and_gradient_for_outcomes(params, market, outcomes, initial_wealth):
    outcomes = np.asarray(outcomes, dtype=params.dtype)
    if outcomes.ndim != 2 or outcomes.shape[1] != market.num_events:
        raise AllocationBackendError(
            f"Outcome batch must have shape (batch, {market.num_events}); got {outcomes.shape}."
        )
    batch_size = outcomes.shape[0]

    allocation = compute_allocation(params, market, initial_wealth)
    net_shares = allocation["n_yes"] - allocation["n_no"]
    excess = outcomes - market.prices
    gain = excess @ net_shares
    wealth_ratio = 1.0 + gain / initial_wealth
    floored_ratio = np.maximum(wealth_ratio, EPSILON)
    loss = -np.mean(np.log(floored_ratio))

    grad_ratio = np.where(wealth_ratio >= EPSILON, -1.0 / (batch_size * floored_ratio), 0.0)
    grad_net = (excess.T @ grad_ratio) / initial_wealth

    adjusted = market.adjusted_prices
    grad_yes_weight = grad_net * initial_wealth / adjusted
    grad_no_weight = -grad_net * initial_wealth / (1.0 - adjusted)

    alpha_yes = allocation["alpha_yes"]
    alpha_no = allocation["alpha_no"]
    grad_f = np.stack([np.sum(grad_yes_weight * alpha_yes), np.sum(grad_no_weight * alpha_no)])
    grad_theta = _softmax_backward(allocation["fractions"], grad_f)

    dtype = params.dtype
    grads = {
        "theta_yes": np.asarray(grad_theta[0], dtype=dtype),
        "theta_no": np.asarray(grad_theta[1], dtype=dtype),
        "phi_yes": _softmax_backward(alpha_yes, grad_yes_weight * allocation["f_yes"]).astype(dtype),
        "phi_no": _softmax_backward(alpha_no, grad_no_weight * allocation["f_no"]).astype(dtype),
    }
    return loss, grads


def evaluate_loss_and_gradient(params, market, initial_wealth, batch_size, rng):
    with np.errstate(over="ignore", invalid="ignore", divide="ignore", under="ignore"):
        outcomes = sample_outcomes(market, batch_size, rng)
        return loss_and_gradient_for_outcomes(params, market, outcomes, initial_wealth)


class AdamOptimizer:
    def __init__(self, learning_rate, beta1=0.9, beta2=0.999, epsilon=1e-7):
        self.learning_rate = float(learning_rate)
        self.beta1 = float(beta1)
        self.beta2 = float(beta2)
        self.epsilon = float(epsilon)
        self.first_moments = {}
        self.second_moments = {}
        self.step_count = 0

    def step(self, params, grads):
        self.step_count += 1
        bias_correction1 = 1.0 - self.beta1 ** self.step_count
        bias_correction2 = 1.0 - self.beta2 ** self.step_count

        with np.errstate(over="ignore", invalid="ignore", under="ignore"):
            for name, values in params.groups().items():
                grad = grads[name]
                if grad.shape != values.shape:
                    raise AllocationBackendError(
                        f"Gradient for {name} has shape {grad.shape}, expected {values.shape}."
                    )
                m = self.first_moments.get(name)
                v = self.second_moments.get(name)
                if m is None:
                    m = np.zeros_like(values)
                    v = np.zeros_like(values)
                m = self.beta1 * m + (1.0 - self.beta1) * grad
                v = self.beta2 * v + (1.0 - self.beta2) * grad * grad
                self.first_moments[name] = m.astype(values.dtype)
                self.second_moments[name] = v.astype(values.dtype)

                m_hat = m / bias_correction1
                v_hat = v / bias_correction2
                update = self.learning_rate * m_hat / (np.sqrt(v_hat) + self.epsilon)
                values -= update.astype(values.dtype)

    def release(self):
        self.first_moments.clear()
        self.second_moments.clear()
