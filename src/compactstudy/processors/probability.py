"""Discrete probability specialist."""
from __future__ import annotations

from .domain import DomainContentProcessor, ExtractionSlice

PROBABILITY_SLICES = (
    ExtractionSlice(
        "basics",
        "Extract probability basics: P(A), P(A u B), P(A n B), complements, sample spaces, "
        "events and the basic probability rules.",
    ),
    ExtractionSlice(
        "conditional",
        "Extract conditional probability: P(A|B) = P(A n B) / P(B), independence and the "
        "multiplication rule, with worked calculations.",
    ),
    ExtractionSlice(
        "bayes",
        "Extract Bayes' theorem P(A|B) = P(B|A) P(A) / P(B), the law of total probability, "
        "prior and posterior probabilities.",
    ),
    ExtractionSlice(
        "bernoulli",
        "Extract Bernoulli trials and the binomial distribution "
        "P(X = k) = C(n,k) p^k (1-p)^(n-k).",
    ),
    ExtractionSlice(
        "random_variables",
        "Extract random variables: definitions, discrete random variables, probability mass "
        "and cumulative distribution functions.",
    ),
    ExtractionSlice(
        "expected_value",
        "Extract expected value E[X] = sum x P(X = x), variance Var(X) = E[X^2] - (E[X])^2, "
        "standard deviation and their properties.",
    ),
    ExtractionSlice(
        "practice_problems",
        "Extract complete probability problems with step-by-step solutions.",
        examples_only=True,
    ),
)


class ProbabilityContentProcessor(DomainContentProcessor):
    processor_id = "probability-processor"
    name = "Discrete probability processor"
    domain = "probability"
    keywords = (
        "probability",
        "conditional probability",
        "bayes",
        "bernoulli",
        "random variable",
        "expected value",
        "variance",
        "standard deviation",
        "sample space",
    )
    slices = PROBABILITY_SLICES


__all__ = ["PROBABILITY_SLICES", "ProbabilityContentProcessor"]
