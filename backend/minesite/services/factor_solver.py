"""Bounded, regularised least squares by projected gradient descent."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Sequence

# purpose: minimise ||Ax - b||^2 + lam * ||x - prior||^2 subject to per-coordinate bounds
# inputs: dense m x n matrix A, targets b, (lo, hi) bounds per column, prior vector
# outputs: best iterate within the iteration budget with predictions and residuals
# status: production

DEFAULT_LAMBDA = float(os.getenv("FACTOR_SOLVER_LAMBDA", "0.05"))
DEFAULT_MAX_ITERATIONS = int(os.getenv("FACTOR_SOLVER_MAX_ITERATIONS", "800"))
DEFAULT_TOLERANCE = float(os.getenv("FACTOR_SOLVER_TOLERANCE", "1e-6"))

# keeps the step finite when A is all zeros and lam is 0
_STEP_EPSILON = 1e-9


@dataclass(frozen=True)
class Bounds:
    lo: float = 0.0
    hi: float = math.inf

    def clamp(self, value: float) -> float:
        return min(max(value, self.lo), self.hi)


@dataclass
class SolveResult:
    x: list[float]
    predicted: list[float]
    residual: list[float]
    iterations: int
    converged: bool


def _matvec(A: Sequence[Sequence[float]], x: Sequence[float]) -> list[float]:
    return [math.fsum(a * v for a, v in zip(row, x)) for row in A]


def solve_projected_gradient(
    A: Sequence[Sequence[float]],
    b: Sequence[float],
    bounds: Sequence[Bounds],
    prior: Sequence[float],
    *,
    lam: float | None = None,
    iterations: int | None = None,
    tolerance: float | None = None,
) -> SolveResult:
    """Solve the bounded ridge problem with a fixed Lipschitz step.

    The step is ``1 / (2 * ||A||_F^2 + 2 * lam)``; iteration stops once the
    L1 movement of one projected step drops below ``tolerance`` or the budget
    runs out. Never raises for non-convergence: the last iterate is returned
    with ``converged=False``.
    """

    lam = DEFAULT_LAMBDA if lam is None else float(lam)
    iterations = DEFAULT_MAX_ITERATIONS if iterations is None else int(iterations)
    tolerance = DEFAULT_TOLERANCE if tolerance is None else float(tolerance)

    m = len(A)
    n = len(A[0]) if m else 0
    if not m or not n:
        return SolveResult(x=[], predicted=[0.0] * m, residual=[-float(v) for v in b], iterations=0, converged=True)
    if len(bounds) != n or len(prior) != n or len(b) != m:
        raise ValueError("dimension mismatch between A, b, bounds and prior")

    fro2 = math.fsum(a * a for row in A for a in row)
    alpha = 1.0 / (2.0 * fro2 + 2.0 * lam + _STEP_EPSILON)

    x = [bounds[j].clamp(float(prior[j])) for j in range(n)]
    converged = False
    performed = 0
    for _ in range(iterations):
        performed += 1
        residual = [ax - bi for ax, bi in zip(_matvec(A, x), b)]
        moved = 0.0
        for j in range(n):
            grad = 2.0 * math.fsum(A[i][j] * residual[i] for i in range(m))
            grad += 2.0 * lam * (x[j] - prior[j])
            stepped = bounds[j].clamp(x[j] - alpha * grad)
            moved += abs(stepped - x[j])
            x[j] = stepped
        if moved < tolerance:
            converged = True
            break

    predicted = _matvec(A, x)
    return SolveResult(
        x=x,
        predicted=predicted,
        residual=[p - bi for p, bi in zip(predicted, b)],
        iterations=performed,
        converged=converged,
    )
