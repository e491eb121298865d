"""
Main file for the project. Loads a catalog and a room graph and solves the
dungeon placement, writing the result into the hydra output directory.
"""

import json
import logging
import os
import time

from datetime import timedelta
from pathlib import Path

import hydra

from hydra.core.hydra_config import HydraConfig
from hydra.utils import to_absolute_path
from omegaconf import DictConfig, OmegaConf

from dungeonsmith.catalog import ModuleCatalog
from dungeonsmith.errors import FailureKind
from dungeonsmith.export import grid_to_ascii, placements_to_dict, placements_to_grid
from dungeonsmith.geometry.configuration_space import ConfigurationSpaceLibrary
from dungeonsmith.graph import (
    MapGraph,
    build_direct_assignments,
    chains_from_dict,
    expand_corridor_graph,
    graph_order_chain,
)
from dungeonsmith.solver import Layout, PlacementEngine, SolverConfig
from dungeonsmith.utils.logging import LOG_FORMAT, FileLoggingContext

console_logger = logging.getLogger(__name__)


def _load_json(path: str):
    with open(to_absolute_path(path)) as f:
        return json.load(f)


def solve_with_retries(
    engine: PlacementEngine, graph: MapGraph, chains_path: str | None, attempts: int
):
    node_assignments, edge_assignments = build_direct_assignments(graph)
    chains = (
        chains_from_dict(_load_json(chains_path))
        if chains_path
        else graph_order_chain(graph)
    )
    positions = {n.node_id: n.position for n in graph.nodes}

    result = None
    for attempt in range(max(1, attempts)):
        seed = engine.config.seed + attempt
        result = engine.solve(
            node_assignments=node_assignments,
            edge_assignments=edge_assignments,
            chains=chains,
            seed=seed,
            node_positions=positions,
        )
        if result.success:
            break
        console_logger.info(
            f"Attempt {attempt + 1}/{attempts} (seed {seed}) failed: {result.message}"
        )
        # Retrying cannot fix malformed input.
        if result.failure == FailureKind.INVARIANT_VIOLATION:
            break
    return result


def run_local(cfg: DictConfig):
    start_time = time.time()
    output_dir = Path(HydraConfig.get().runtime.output_dir)

    with FileLoggingContext(log_file_path=output_dir / "solve.log"):
        console_logger.info(f"Outputs will be saved to: {output_dir}")
        console_logger.info("Resolved configuration:\n" + OmegaConf.to_yaml(cfg))

        catalog = ModuleCatalog.from_json_file(Path(to_absolute_path(cfg.catalog_path)))
        graph = MapGraph.from_json_file(Path(to_absolute_path(cfg.graph_path)))
        solver_config = SolverConfig.from_dict_config(cfg.solver)

        library = ConfigurationSpaceLibrary(
            catalog,
            verbose=solver_config.verbose,
            max_verbose_logs=solver_config.max_verbose_logs,
        )
        cache_path = (
            Path(to_absolute_path(cfg.config_space_cache_path))
            if cfg.config_space_cache_path
            else None
        )
        if cache_path is not None and library.load(cache_path):
            console_logger.info(f"Loaded configuration spaces from {cache_path}")
        library.precompute()
        if cache_path is not None:
            library.save(cache_path)

        engine = PlacementEngine(catalog=catalog, library=library, config=solver_config)
        if cfg.layout_path:
            layout = Layout.from_dict(_load_json(cfg.layout_path))
            result = engine.place_from_layout(layout, expand_corridor_graph(graph))
        else:
            result = solve_with_retries(
                engine=engine,
                graph=graph,
                chains_path=cfg.chains_path,
                attempts=cfg.attempts,
            )

        result_path = output_dir / "result.json"
        with open(result_path, "w") as f:
            json.dump(placements_to_dict(result), f, indent=2)
        console_logger.info(f"Saved result to: {result_path}")

        if result.success:
            grid, origin = placements_to_grid(result.placements)
            map_path = output_dir / "map.txt"
            map_path.write_text(grid_to_ascii(grid) + "\n")
            console_logger.info(f"Saved map (origin {origin}) to: {map_path}")
        else:
            console_logger.error(f"Solve failed ({result.failure.value}): {result.message}")

        console_logger.info(
            f"Run completed in {timedelta(seconds=time.time() - start_time)}"
        )


@hydra.main(version_base=None, config_path="configurations", config_name="config")
def run(cfg: DictConfig):
    # Configure logging level from LOGLEVEL environment variable.
    log_level = os.environ.get("LOGLEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=LOG_FORMAT,
    )
    run_local(cfg)


if __name__ == "__main__":
    run()
