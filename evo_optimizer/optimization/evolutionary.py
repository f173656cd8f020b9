# evo_optimizer/optimization/evolutionary.py
"""
Evolution engine: the generation-to-generation search loop.

State machine:
    not_started -> started -> (loop) -> stopped | termination_reached
    stopped -> resumed -> (loop) -> ...

Per generation:
- fruitless current generation: fresh random batch (population_size) + its raw candidates
- otherwise: roulette parents -> random crossover per pairing -> mutated copies,
  plus the top 20% elite unchanged, plus 3 rounds of single-gene redraws of the best
- dedupe/known-work filtering in the GenerationStore, then evaluate the unscored
  rest on the ExecutionBackend (timeout -> EvaluationTimeout, fatal; a cancelled
  batch stops the engine with the generation left unscored)
- score bookkeeping, generation_completed event, termination check

Modes:
- genetic: random seed population, OR(fruitless, generation cap, stagnation,
  exhausted search space)
- brute_force: cartesian seed population, one generation, no evolution
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Tuple

from evo_optimizer.optimization.backends import ExecutionBackend
from evo_optimizer.optimization.candidate import Candidate, EvaluationWindow, GeneSpec
from evo_optimizer.optimization.errors import AlreadyTerminated, EvaluationTimeout
from evo_optimizer.optimization.fitness import FitnessEvaluator
from evo_optimizer.optimization.gene_factory import CandidateFactory
from evo_optimizer.optimization.generation import Generation, GenerationStore
from evo_optimizer.optimization.termination import (
    GenerationNumberTermination,
    Termination,
    genetic_termination,
)
from evo_optimizer.utils.progress import ProgressCallback, console_progress
from evo_optimizer.utils.training_logger import TrainingLogger

logger = logging.getLogger("optimization.evolutionary")


class EngineState(str, Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    STOPPED = "stopped"
    RESUMED = "resumed"
    TERMINATION_REACHED = "termination_reached"


# --- Engine configuration --------------------------------------------------


@dataclass
class EvolutionConfig:
    """Typed knobs for one search run."""

    mode: Literal["genetic", "brute_force"] = "genetic"
    population_size: int = 12
    generation_max_size: int = 24
    generations: Optional[int] = 1000
    stagnation_generations: Optional[int] = 10
    fruitless_generations: int = 3
    mutation_probability: float = 0.1
    crossover_parents: int = 8
    crossover_mix_probability: float = 0.5
    one_point_crossover: bool = False
    elite_fraction: float = 0.2
    neighbourhood_rounds: int = 3
    evaluation_timeout: Optional[float] = None
    use_actual_genes: bool = False
    max_retained_generations: Optional[int] = None
    seed: Optional[int] = None

    def elite_count(self) -> int:
        return max(1, int(self.elite_fraction * self.generation_max_size))

    def validate_for_start(self) -> None:
        if self.mode not in ("genetic", "brute_force"):
            raise ValueError(f"Unknown optimisation mode: {self.mode}")
        if self.population_size < 1 or self.generation_max_size < 1:
            raise ValueError("population_size and generation_max_size must be >= 1")
        if self.mode == "brute_force":
            return
        if self.crossover_parents < 2:
            raise ValueError("crossover_parents must be >= 2")
        if abs(self.mutation_probability) < 0.01:
            raise ValueError("mutation_probability must be >= 0.01")
        if abs(self.crossover_mix_probability) < 0.01:
            raise ValueError("crossover_mix_probability must be >= 0.01")
        if not self.generations and not self.stagnation_generations:
            logger.warning(
                "no generation cap or stagnation limit: only %d fruitless or exhausted "
                "generations in a row will end this run",
                self.fruitless_generations,
            )

    def to_log_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["elite_count"] = self.elite_count()
        return data


def coerce_config(config: Optional[Any]) -> EvolutionConfig:
    if config is None:
        return EvolutionConfig()
    if isinstance(config, EvolutionConfig):
        return config
    if isinstance(config, dict):
        allowed = {k: config[k] for k in EvolutionConfig.__dataclass_fields__ if k in config}
        return EvolutionConfig(**allowed)
    raise TypeError(f"Unsupported config type: {type(config)!r}")


# ----------------------------- Genetic ops -------------------------------


def roulette_select(pool: Sequence[Candidate], count: int, rng: random.Random) -> List[Candidate]:
    """Fitness-proportional selection with replacement (uniform when no weight is positive)."""
    if not pool:
        raise ValueError("Parent selection requires a non-empty pool")
    weights = [max(0.0, float(c.score or 0.0)) for c in pool]
    if sum(weights) <= 0.0:
        return [rng.choice(pool) for _ in range(count)]
    return rng.choices(list(pool), weights=weights, k=count)


def _children(genes1: List, genes2: List) -> Tuple[Candidate, Candidate]:
    return Candidate(tuple(genes1)), Candidate(tuple(genes2))


def uniform_crossover(p1: Candidate, p2: Candidate, rng: random.Random, mix_probability: float = 0.5) -> Tuple[Candidate, Candidate]:
    g1, g2 = list(p1.genes), list(p2.genes)
    for i in range(len(g1)):
        if rng.random() < mix_probability:
            g1[i], g2[i] = g2[i], g1[i]
    return _children(g1, g2)


def one_point_crossover(p1: Candidate, p2: Candidate, rng: random.Random) -> Tuple[Candidate, Candidate]:
    n = len(p1)
    if n < 2:
        return p1.spawn(), p2.spawn()
    pivot = rng.randint(1, n - 1)
    g1 = list(p1.genes[:pivot]) + list(p2.genes[pivot:])
    g2 = list(p2.genes[:pivot]) + list(p1.genes[pivot:])
    return _children(g1, g2)


def two_point_crossover(p1: Candidate, p2: Candidate, rng: random.Random) -> Tuple[Candidate, Candidate]:
    n = len(p1)
    if n < 3:
        return one_point_crossover(p1, p2, rng)
    a, b = sorted(rng.sample(range(1, n), 2))
    g1 = list(p1.genes[:a]) + list(p2.genes[a:b]) + list(p1.genes[b:])
    g2 = list(p2.genes[:a]) + list(p1.genes[a:b]) + list(p2.genes[b:])
    return _children(g1, g2)


def uniform_mutation(candidate: Candidate, factory: CandidateFactory, probability: float) -> Candidate:
    """Copy of `candidate` where each gene is redrawn with `probability`."""
    out = candidate.spawn()
    for idx in range(len(candidate)):
        if factory.rng.random() < probability:
            out = factory.regenerate_gene(out, idx)
    return out


Crossover = Callable[[Candidate, Candidate, random.Random], Tuple[Candidate, Candidate]]


# ------------------------------- Engine ----------------------------------


class EvolutionEngine:
    def __init__(
        self,
        specs: Sequence[GeneSpec],
        evaluator: FitnessEvaluator,
        backend: ExecutionBackend,
        window: EvaluationWindow,
        *,
        config: Optional[Any] = None,
        termination: Optional[Termination] = None,
        progress_cb: Optional[ProgressCallback] = None,
        training_logger: Optional[TrainingLogger] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = coerce_config(config)
        self.rng = rng or random.Random(self.config.seed)
        # validates every spec up front: a bad domain aborts before seeding
        self.factory = CandidateFactory(specs, self.rng)
        self.evaluator = evaluator
        self.backend = backend
        self.window = window
        self.store = GenerationStore(
            self.factory.specs,
            self.config.generation_max_size,
            max_retained_generations=self.config.max_retained_generations,
        )
        self.termination = termination or self.default_termination()
        self.progress_cb: ProgressCallback = progress_cb or console_progress
        self.training_logger = training_logger
        self.state = EngineState.NOT_STARTED
        self._stop_requested = threading.Event()
        self._started_at: Optional[float] = None

        mix = self.config.crossover_mix_probability
        self._crossovers: List[Crossover] = [
            lambda a, b, r: uniform_crossover(a, b, r, mix),
            one_point_crossover if self.config.one_point_crossover else two_point_crossover,
        ]

    def default_termination(self) -> Termination:
        if self.config.mode == "brute_force":
            return GenerationNumberTermination(1)
        return genetic_termination(
            fruitless_generations=self.config.fruitless_generations,
            generations=self.config.generations,
            stagnation_generations=self.config.stagnation_generations,
            exhausted_generations=self.config.fruitless_generations,
        )

    # --------------------------------------------------------- properties

    @property
    def generation_number(self) -> int:
        return self.store.generation_number

    @property
    def best_candidate(self) -> Optional[Candidate]:
        return self.store.best

    @property
    def elapsed_sec(self) -> float:
        return 0.0 if self._started_at is None else time.monotonic() - self._started_at

    def profitable_candidates(self, top_n: Optional[int] = None) -> List[Candidate]:
        out = self.store.profitable_candidates()
        return out if top_n is None else out[: max(0, int(top_n))]

    # -------------------------------------------------------------- control

    def start(self) -> Optional[Candidate]:
        if self.state != EngineState.NOT_STARTED:
            raise RuntimeError(f"Engine already started (state={self.state.value})")
        self.config.validate_for_start()

        self._started_at = time.monotonic()
        if self.config.mode == "brute_force":
            population = self.factory.cartesian()
        else:
            population = self.factory.generate_many(self.config.population_size)
            if self.config.use_actual_genes and population:
                population[0] = self.factory.generate(use_actual=True)
        self.store.seed(population)
        self.state = EngineState.STARTED

        self._log("session_meta", {
            "config": self.config.to_log_payload(),
            "window": self.window.to_payload(),
            "genes": [s.key for s in self.factory.specs],
            "termination": self.termination.describe(),
            "backend": self.backend.name,
            "seed_size": len(self.store.current.candidates) if self.store.current else 0,
        })
        self._run()
        return self.best_candidate

    def stop(self) -> None:
        """Ask the loop to halt before the next generation begins."""
        if self.state == EngineState.NOT_STARTED:
            raise RuntimeError("Engine has not been started")
        self._stop_requested.set()

    def resume(self) -> Optional[Candidate]:
        if self.state == EngineState.NOT_STARTED:
            raise RuntimeError("Engine has not been started")
        if self.termination.has_reached(self.store):
            raise AlreadyTerminated(
                f"Termination already reached at generation {self.generation_number}"
            )
        self._stop_requested.clear()
        self.state = EngineState.RESUMED
        self._run()
        return self.best_candidate

    # ---------------------------------------------------------------- loop

    def _run(self) -> None:
        try:
            if self._evaluate_current():
                return
            while True:
                self._create_next_generation()
                if self._evaluate_current():
                    return
        except Exception as exc:
            self.state = EngineState.STOPPED
            context = {
                "generation": self.generation_number,
                "elapsed_sec": round(self.elapsed_sec, 3),
                "window": self.window.to_payload(),
            }
            logger.error(
                "search aborted at generation %d after %.1fs: %s",
                self.generation_number, self.elapsed_sec, exc,
            )
            if self.training_logger is not None:
                self.training_logger.log_error(context, exc)
            raise

    def _evaluate_current(self) -> bool:
        """Evaluate + score the current generation; True when the loop should end."""
        gen = self.store.current
        if gen is None:
            raise RuntimeError("No generation to evaluate")

        if not gen.scored:
            for cand in gen.pending():
                self.backend.submit(cand, self.evaluator, self.window)
            timeout = self.config.evaluation_timeout
            if not self.backend.run_pending(timeout):
                self.backend.clear()
                if self.backend.last_batch_cancelled:
                    # unscored candidates stay pending; resume() submits them again
                    self.state = EngineState.STOPPED
                    self._log("evaluation_cancelled", {
                        "generation": gen.number,
                        "pending": len(gen.pending()),
                        "elapsed_sec": round(self.elapsed_sec, 3),
                    })
                    logger.info(
                        "generation %d cancelled with %d candidates unevaluated",
                        gen.number, len(gen.pending()),
                    )
                    return True
                self._log("evaluation_timeout", {
                    "generation": gen.number,
                    "timeout": timeout,
                    "elapsed_sec": self.elapsed_sec,
                })
                raise EvaluationTimeout(
                    f"Generation {gen.number} did not finish within {timeout}s",
                    generation=gen.number,
                    elapsed_sec=self.elapsed_sec,
                )
            self.store.on_generation_scored()
            self._notify_generation(gen)

        if self.termination.has_reached(self.store):
            self.state = EngineState.TERMINATION_REACHED
            self._notify_termination()
            return True
        if self._stop_requested.is_set():
            self.backend.cancel()
            self.state = EngineState.STOPPED
            logger.info("search stopped after generation %d", gen.number)
            return True
        return False

    def _create_next_generation(self) -> Generation:
        current = self.store.current
        if current is None:
            raise RuntimeError("No generation to evolve from")
        if current.is_fruitless:
            fresh = self.factory.generate_many(self.config.population_size)
            logger.debug("generation %d fruitless: reseeding %d", current.number, len(fresh))
            return self.store.advance(fresh + list(current.candidates))
        return self.store.advance(self._create_children(current))

    def _create_children(self, current: Generation) -> List[Candidate]:
        cfg = self.config
        parents = roulette_select(current.candidates, cfg.crossover_parents, self.rng)
        distinct = list({p.id: p for p in parents}.values())

        offspring: List[Candidate] = []
        while len(offspring) < cfg.generation_max_size:
            op = self.rng.choice(self._crossovers)
            if len(distinct) >= 2:
                p1, p2 = self.rng.sample(distinct, 2)
            else:
                p1 = p2 = distinct[0]
            for child in op(p1, p2, self.rng):
                offspring.append(child)
                offspring.append(uniform_mutation(child, self.factory, cfg.mutation_probability))

        elite = list(current.candidates[: cfg.elite_count()])

        neighbours: List[Candidate] = []
        best = self.store.best
        if best is not None:
            for _ in range(cfg.neighbourhood_rounds):
                for idx in range(len(best)):
                    neighbours.append(self.factory.regenerate_gene(best, idx))

        return elite + offspring + neighbours

    # -------------------------------------------------------------- events

    def _log(self, event: str, payload: Dict[str, Any]) -> None:
        if self.training_logger is not None:
            self.training_logger.log(event, payload)

    def _notify_generation(self, gen: Generation) -> None:
        payload = gen.to_log_payload()
        payload["elapsed_sec"] = round(self.elapsed_sec, 3)
        self.progress_cb("generation_completed", payload)
        self._log("generation_completed", payload)

    def _notify_termination(self) -> None:
        best = self.best_candidate
        payload = {
            "generation": self.generation_number,
            "best_score": best.score if best is not None else None,
            "best": best.summary() if best is not None else None,
            "elapsed_sec": round(self.elapsed_sec, 3),
            "history": [g.to_log_payload() for g in self.store.generations],
        }
        self.progress_cb("termination_reached", payload)
        self._log("termination_reached", payload)


__all__ = [
    "EngineState",
    "EvolutionConfig",
    "EvolutionEngine",
    "coerce_config",
    "roulette_select",
    "uniform_crossover",
    "one_point_crossover",
    "two_point_crossover",
    "uniform_mutation",
]
