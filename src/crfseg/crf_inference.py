"""
MAP inference for the pixel CRF.

Energy of a labeling l:

    E(l) = Σ_i U(i, l_i) + Σ_(i,j) λ · contrast(i, j) · [l_i ≠ l_j]
    U(i, ℓ) = -log P(ℓ | x_i)

Minimised by α-expansion: starting from the unary argmax, each move lets
every pixel either keep its label or switch to α. The binary move energy is
submodular for the Potts pairwise term and is solved exactly by a min-cut
(PyMaxflow grid graph). A move is accepted only if it lowers the energy, so
the energy never increases between iterations.

Stop conditions:
- a full cycle over the labels accepts no move (converged)
- max_iterations cycles done, or time_limit seconds spent (best-so-far
  labeling returned, budget_exceeded flag set, SolverBudgetExceeded warned)

λ = 0 is decoded directly as the per-pixel argmax of the probabilities.
"""

import time
import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import maxflow
import numpy as np

from crfseg.config import SegmentationConfig
from crfseg.cste import CRFConfig
from crfseg.errors import ConfigError, DimensionMismatchError, SolverBudgetExceeded
from crfseg.logger import get_logger
from crfseg.pairwise import ContrastPotential, Offset, edge_slices

log = get_logger("crf_inference")


# ============================================================================
# ENERGY
# ============================================================================

def unary_from_probabilities(probabilities: np.ndarray, eps: float = CRFConfig.PROB_EPS) -> np.ndarray:
    """U = -log(max(P, eps)), same shape as the probabilities."""
    return -np.log(np.maximum(np.asarray(probabilities, dtype=np.float64), eps))


def labeling_energy(
    unary: np.ndarray,
    labeling: np.ndarray,
    contrast: ContrastPotential,
    weight: float,
) -> float:
    """
    Total energy of a labeling.

    Args:
        unary: Unary costs (H, W, K)
        labeling: Labels (H, W) in [0, K)
        contrast: Contrast maps of the image
        weight: Pairwise weight λ

    Returns:
        Σ unary + λ Σ contrast over disagreeing edges
    """
    if labeling.shape != unary.shape[:2]:
        raise DimensionMismatchError(unary.shape[:2], labeling.shape, what="labeling")
    data_term = np.take_along_axis(unary, labeling[..., None].astype(np.intp), axis=-1).sum()
    return float(data_term) + contrast.disagreement_cost(labeling, weight)


def _freeze(labeling: np.ndarray) -> np.ndarray:
    labeling = np.array(labeling, dtype=np.int32)
    labeling.flags.writeable = False
    return labeling


def argmax_labeling(probabilities: np.ndarray) -> np.ndarray:
    """Per-pixel independent argmax decoding, read-only (H, W) int32."""
    return _freeze(np.argmax(probabilities, axis=-1))


@dataclass(frozen=True)
class InferenceResult:
    """Outcome of one MAP inference call."""

    labeling: np.ndarray
    energy: float
    energy_history: Tuple[float, ...]
    iterations: int
    converged: bool
    budget_exceeded: bool = False


# ============================================================================
# ALPHA-EXPANSION
# ============================================================================

def _structure(offset: Offset) -> np.ndarray:
    """3x3 PyMaxflow neighbourhood with a single edge towards offset."""
    structure = np.zeros((3, 3))
    structure[1 + offset[0], 1 + offset[1]] = 1
    return structure


class AlphaExpansionSolver:
    """
    Move-making solver for multi-label Potts energies on a pixel grid.

    ! Each cycle visits the labels in increasing order, the output is
    ! fully determined by the inputs
    """

    def __init__(
        self,
        max_iterations: int = CRFConfig.MAX_ITERATIONS,
        time_limit: float = CRFConfig.TIME_LIMIT,
        tolerance: float = CRFConfig.TOLERANCE,
    ):
        """
        Args:
            max_iterations: Maximum number of cycles over all labels
            time_limit: Wall-clock budget in seconds
            tolerance: Minimum energy decrease for a move to be accepted
        """
        if max_iterations < 1:
            raise ConfigError(f"max_iterations must be >= 1, got {max_iterations}")
        if not time_limit > 0:
            raise ConfigError(f"time_limit must be > 0, got {time_limit}")
        if tolerance < 0:
            raise ConfigError(f"tolerance must be >= 0, got {tolerance}")

        self.max_iterations = max_iterations
        self.time_limit = time_limit
        self.tolerance = tolerance

    @classmethod
    def from_config(cls, config: SegmentationConfig) -> "AlphaExpansionSolver":
        return cls(
            max_iterations=config.max_iterations,
            time_limit=config.time_limit,
            tolerance=config.tolerance,
        )

    @staticmethod
    def expansion_move(
        unary: np.ndarray,
        labeling: np.ndarray,
        alpha: int,
        directions: Sequence[Offset],
        edge_costs: Sequence[np.ndarray],
    ) -> np.ndarray:
        """
        Optimal α-expansion of a labeling.

        Binary variable x_i = 1 means pixel i switches to α. For an edge with
        cost w the move energy table is
            E00 = w[f_i≠f_j], E01 = w[f_i≠α], E10 = w[α≠f_j], E11 = 0
        decomposed as E00 + (E10-E00) x_i - E10 x_j + (E01+E10-E00) (1-x_i) x_j.

        Returns:
            Proposed labeling (H, W)
        """
        H, W, _ = unary.shape
        current_cost = np.take_along_axis(unary, labeling[..., None].astype(np.intp), axis=-1)[..., 0]
        cost_keep = current_cost.copy()         # cost of x_i = 0
        cost_switch = unary[..., alpha].copy()  # cost of x_i = 1

        graph = maxflow.Graph[float]()
        nodeids = graph.add_grid_nodes((H, W))

        for offset, costs in zip(directions, edge_costs):
            src, dst = edge_slices((H, W), offset)
            w = costs[src]
            f_i, f_j = labeling[src], labeling[dst]

            e00 = w * (f_i != f_j)
            e01 = w * (f_i != alpha)
            e10 = w * (f_j != alpha)

            cost_switch[src] += e10 - e00
            cost_switch[dst] -= e10

            # Edge i -> j is cut when i keeps and j switches
            capacity = np.zeros((H, W))
            capacity[src] = np.maximum(e01 + e10 - e00, 0.0)
            graph.add_grid_edges(nodeids, weights=capacity, structure=_structure(offset), symmetric=False)

        # Sink segment pays the source capacity and takes α
        shift = np.minimum(cost_keep, cost_switch)
        graph.add_grid_tedges(nodeids, cost_switch - shift, cost_keep - shift)
        graph.maxflow()

        switch = graph.get_grid_segments(nodeids)
        return np.where(switch, alpha, labeling).astype(np.int32)

    def solve(
        self,
        unary: np.ndarray,
        contrast: ContrastPotential,
        weight: float,
        initial: Optional[np.ndarray] = None,
    ) -> InferenceResult:
        """
        Minimise the CRF energy.

        Args:
            unary: Unary costs (H, W, K)
            contrast: Contrast maps of the image
            weight: Pairwise weight λ >= 0
            initial: Starting labeling, default the unary argmin

        Returns:
            InferenceResult with the lowest-energy labeling found
        """
        unary = np.asarray(unary, dtype=np.float64)
        if unary.ndim != 3:
            raise ValueError(f"Unary costs must be (H, W, K), got shape {unary.shape}")
        if unary.shape[:2] != tuple(contrast.shape):
            raise DimensionMismatchError(contrast.shape, unary.shape[:2], what="unary costs")
        if weight < 0:
            raise ConfigError(f"Pairwise weight must be >= 0, got {weight}")

        num_labels = unary.shape[2]
        labeling = np.argmin(unary, axis=-1).astype(np.int32) if initial is None else np.array(initial, dtype=np.int32)
        energy = labeling_energy(unary, labeling, contrast, weight)
        history: List[float] = [energy]

        edge_costs = contrast.edge_costs(weight)
        start = time.perf_counter()
        iterations = 0
        converged = False
        budget_exceeded = False

        while True:
            if iterations >= self.max_iterations:
                budget_exceeded = True
                break

            accepted = 0
            for alpha in range(num_labels):
                if time.perf_counter() - start > self.time_limit:
                    budget_exceeded = True
                    break

                proposal = self.expansion_move(unary, labeling, alpha, contrast.directions, edge_costs)
                proposal_energy = labeling_energy(unary, proposal, contrast, weight)

                #! Only strictly improving moves, the energy is monotone
                if proposal_energy < energy - self.tolerance:
                    labeling, energy = proposal, proposal_energy
                    accepted += 1

            iterations += 1
            history.append(energy)

            if budget_exceeded:
                break
            if accepted == 0:
                converged = True
                break

        if budget_exceeded:
            message = (
                f"MAP inference stopped after {iterations} iteration(s) "
                f"({time.perf_counter() - start:.2f}s) without converging, energy {energy:.4f}"
            )
            log.warning(message)
            warnings.warn(message, SolverBudgetExceeded, stacklevel=2)

        return InferenceResult(
            labeling=_freeze(labeling),
            energy=energy,
            energy_history=tuple(history),
            iterations=iterations,
            converged=converged,
            budget_exceeded=budget_exceeded,
        )


# ============================================================================
# ENGINE
# ============================================================================

class CRFInferenceEngine:
    """
    Combines calibrated per-pixel distributions with pairwise costs.

    ! Holds no per-image state, one engine serves any number of images
    """

    def __init__(self, solver: Optional[AlphaExpansionSolver] = None, eps: float = CRFConfig.PROB_EPS):
        self.solver = solver if solver is not None else AlphaExpansionSolver()
        self.eps = eps

    @classmethod
    def from_config(cls, config: SegmentationConfig) -> "CRFInferenceEngine":
        return cls(AlphaExpansionSolver.from_config(config))

    def infer(self, probabilities: np.ndarray, contrast: ContrastPotential, weight: float) -> InferenceResult:
        """
        MAP labeling of one image.

        Args:
            probabilities: Calibrated distributions (H, W, K)
            contrast: Contrast maps of the same image
            weight: Pairwise weight λ

        Returns:
            InferenceResult
        """
        probabilities = np.asarray(probabilities)
        if probabilities.ndim != 3:
            raise ValueError(f"Probabilities must be (H, W, K), got shape {probabilities.shape}")
        if probabilities.shape[:2] != tuple(contrast.shape):
            raise DimensionMismatchError(contrast.shape, probabilities.shape[:2], what="probabilities")
        if weight < 0:
            raise ConfigError(f"Pairwise weight must be >= 0, got {weight}")

        unary = unary_from_probabilities(probabilities, self.eps)

        #! Exact unary-only decoding, no solver involved
        if weight == 0:
            labeling = argmax_labeling(probabilities)
            energy = labeling_energy(unary, labeling, contrast, 0.0)
            return InferenceResult(
                labeling=labeling,
                energy=energy,
                energy_history=(energy,),
                iterations=0,
                converged=True,
            )

        initial = np.argmax(probabilities, axis=-1)
        return self.solver.solve(unary, contrast, weight, initial=initial)
