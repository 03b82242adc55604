"""Quality-aware substitution error model and its self-consistent estimation.

The model is a 16 x (max_quality + 1) matrix of transition probabilities,
rows ordered A2A, A2C, A2G, A2T, C2A, ... T2T, columns by Phred score. Each
row block for a source base sums to one over the four destination bases.

Learning alternates denoising with re-estimation: every round is a pure
function of the previous model, returning a new model and the maximum
relative change of the substitution rates. The driving loop is capped.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from asvsense.config import DenoiseConfig, ErrorModelConfig
from asvsense.denoise import DenoiseResult, denoise_sample
from asvsense.exceptions import NoSamplesError, NonConvergence
from asvsense.types import BASES, FORWARD, DereplicatedSequence
from asvsense.workers import map_samples

TRANSITION_LABELS = [f"{a}2{b}" for a in BASES for b in BASES]
SELF_TRANSITIONS = [5 * i for i in range(4)]  # A2A, C2C, G2G, T2T
SUBSTITUTIONS = [t for t in range(16) if t not in SELF_TRANSITIONS]


class ErrorModel:
    """Immutable transition-probability matrix indexed by (transition, quality)."""

    def __init__(self, rates: np.ndarray, orientation: str = FORWARD,
                 converged: bool = False, rounds: int = 0, delta: float = float('nan')):
        rates = np.array(rates, dtype=np.float64)
        if rates.ndim != 2 or rates.shape[0] != 16:
            raise ValueError(f"Error rates must have shape (16, n_qualities), got {rates.shape}")
        rates.setflags(write=False)
        with np.errstate(divide="ignore"):
            log_rates = np.log(rates)
        log_rates.setflags(write=False)

        self._rates = rates
        self._log_rates = log_rates
        self.orientation = orientation
        self.converged = converged
        self.rounds = rounds
        self.delta = delta

    @classmethod
    def from_quality_prior(cls, max_quality: int = 41, orientation: str = FORWARD,
                           min_error_rate: float = 1e-7) -> 'ErrorModel':
        """Model implied by the Phred definition: p_err = 10^(-Q/10), split evenly over the alternatives."""
        quality = np.arange(max_quality + 1, dtype=np.float64)
        p_err = np.clip(10.0 ** (-quality / 10.0), 3 * min_error_rate, 0.75)
        rates = np.empty((16, max_quality + 1))
        for a in range(4):
            for b in range(4):
                rates[4 * a + b] = 1.0 - p_err if a == b else p_err / 3.0
        return cls(rates, orientation=orientation)

    @property
    def rates(self) -> np.ndarray:
        return self._rates

    @property
    def log_rates(self) -> np.ndarray:
        return self._log_rates

    @property
    def max_quality(self) -> int:
        return self._rates.shape[1] - 1

    def rate(self, from_base: str, to_base: str, quality: int) -> float:
        """Probability that `from_base` is read as `to_base` at the given quality."""
        transition = 4 * BASES.index(from_base) + BASES.index(to_base)
        quality = min(max(int(round(quality)), 0), self.max_quality)
        return float(self._rates[transition, quality])

    def error_rate(self, quality: int) -> float:
        """Mean probability of any substitution at the given quality."""
        quality = min(max(int(round(quality)), 0), self.max_quality)
        return float(1.0 - self._rates[SELF_TRANSITIONS, quality].mean())

    def with_status(self, converged: bool, rounds: int, delta: float) -> 'ErrorModel':
        return ErrorModel(self._rates, orientation=self.orientation,
                          converged=converged, rounds=rounds, delta=delta)

    def to_dict(self) -> Dict:
        return {
            "orientation": self.orientation,
            "converged": self.converged,
            "rounds": self.rounds,
            "delta": self.delta,
            "error_rate_q20": self.error_rate(20),
            "error_rate_q30": self.error_rate(30),
            "rates": {label: [float(r) for r in self._rates[i]] for i, label in enumerate(TRANSITION_LABELS)},
        }


def estimate_error_rates(transitions: np.ndarray, config: ErrorModelConfig,
                         previous: Optional[ErrorModel] = None) -> np.ndarray:
    """Fit transition rates to observed (consensus base -> read base, quality) counts.

    For every substitution, log10 of the empirical rate (with a +1 pseudocount
    on the error count) is fit against quality by a polynomial weighted by the
    number of observations at each quality. Qualities outside the observed
    range hold the nearest fitted value. Substitutions with too few observed
    quality levels keep the previous estimate.

    Args:
        transitions: Counts of shape (16, n_qualities)
        config: Fitting parameters
        previous: Model to fall back on for unobserved transitions

    Returns:
        New rate matrix of shape (16, n_qualities)
    """
    n_qualities = transitions.shape[1]
    quality = np.arange(n_qualities, dtype=np.float64)
    if previous is None:
        previous = ErrorModel.from_quality_prior(n_qualities - 1, min_error_rate=config.min_error_rate)

    rates = np.empty((16, n_qualities))
    for a in range(4):
        totals = transitions[4 * a:4 * a + 4].sum(axis=0)
        observed = totals > 0
        for b in range(4):
            t = 4 * a + b
            if a == b:
                continue
            if np.count_nonzero(observed) > config.fit_degree:
                q_obs = quality[observed]
                log_rate = np.log10((transitions[t, observed] + 1.0) / totals[observed])
                coeffs = np.polyfit(q_obs, log_rate, deg=config.fit_degree, w=np.sqrt(totals[observed]))
                fitted = 10.0 ** np.polyval(coeffs, np.clip(quality, q_obs.min(), q_obs.max()))
            else:
                fitted = previous.rates[t]
            rates[t] = np.clip(fitted, config.min_error_rate, config.max_error_rate)
        substitutions = [4 * a + b for b in range(4) if b != a]
        rates[4 * a + a] = 1.0 - rates[substitutions].sum(axis=0)
    return rates


def error_model_delta(old: ErrorModel, new: ErrorModel) -> float:
    """Maximum relative change of any substitution rate."""
    before = old.rates[SUBSTITUTIONS]
    after = new.rates[SUBSTITUTIONS]
    return float(np.max(np.abs(after - before) / before))


def learn_round(model: ErrorModel, samples: Sequence[Tuple[str, List[DereplicatedSequence]]],
                config: ErrorModelConfig, denoise_config: DenoiseConfig,
                max_workers: int = 1) -> Tuple[ErrorModel, float, List[DenoiseResult]]:
    """One self-consistency round: denoise with `model`, re-estimate from the partitions.

    Returns:
        Tuple of (new_model, delta, per-sample denoise results)
    """
    def run(item):
        sample, uniques = item
        return denoise_sample(uniques, model, denoise_config, sample=sample, orientation=model.orientation)

    results = map_samples(run, samples, max_workers=max_workers,
                          desc=f"Denoising ({model.orientation}) for error learning")

    transitions = np.zeros_like(model.rates)
    for result in results:
        transitions += result.transitions

    if transitions.sum() == 0:
        logging.warning(f"No informative bases for {model.orientation} error learning; keeping current model")
        return model, 0.0, results

    new_model = ErrorModel(estimate_error_rates(transitions, config, previous=model),
                           orientation=model.orientation)
    return new_model, error_model_delta(model, new_model), results


def select_learning_samples(samples: Dict[str, List[DereplicatedSequence]],
                            max_bases: int) -> List[Tuple[str, List[DereplicatedSequence]]]:
    """Take samples in input order until the base budget is reached (0 = all)."""
    selected = []
    total_bases = 0
    for sample, uniques in samples.items():
        if not uniques:
            continue
        selected.append((sample, uniques))
        total_bases += sum(len(u.sequence) * u.abundance for u in uniques)
        if max_bases and total_bases >= max_bases:
            break
    logging.info(f"Learning error rates from {total_bases} bases in {len(selected)} samples")
    return selected


def learn_errors(samples: Dict[str, List[DereplicatedSequence]], orientation: str = FORWARD,
                 config: Optional[ErrorModelConfig] = None,
                 denoise_config: Optional[DenoiseConfig] = None,
                 max_workers: int = 1, diagnostics=None) -> ErrorModel:
    """Learn an error model for one orientation from a batch of samples.

    Starts from the quality-score prior and alternates denoising and
    re-estimation until the maximum relative rate change drops below the
    tolerance.

    Raises:
        NoSamplesError: No sample has any reads
        NonConvergence: Round cap reached and config.fail_on_nonconvergence is set
    """
    if config is None:
        config = ErrorModelConfig()
    if denoise_config is None:
        denoise_config = DenoiseConfig()

    selected = select_learning_samples(samples, config.max_learn_bases)
    if not selected:
        raise NoSamplesError()

    model = ErrorModel.from_quality_prior(config.max_quality, orientation=orientation,
                                          min_error_rate=config.min_error_rate)
    delta = float('inf')
    for round_num in range(1, config.max_rounds + 1):
        model, delta, _ = learn_round(model, selected, config, denoise_config, max_workers)
        logging.info(f"Error model ({orientation}) round {round_num}: max relative change {delta:.4g}")
        if delta < config.tolerance:
            logging.info(f"Error model ({orientation}) converged after {round_num} rounds")
            return model.with_status(True, round_num, delta)

    final = model.with_status(False, config.max_rounds, delta)
    error = NonConvergence(f"Error model ({orientation})", config.max_rounds, delta, estimate=final)
    if config.fail_on_nonconvergence:
        raise error
    if diagnostics is not None:
        diagnostics.record(error, "ErrorModel")
    else:
        logging.warning(error.message)
    return final
