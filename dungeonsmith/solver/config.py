"""Configuration for the placement engine."""

from dataclasses import dataclass, fields

from omegaconf import DictConfig, OmegaConf


@dataclass
class SolverConfig:
    """Configuration for one solve attempt. Threaded into the engine and the
    configuration space library instead of global debug switches."""

    timeout_seconds: float = 5.0
    """Wall-clock budget per attempt. Exceeding it aborts the attempt."""

    seed: int = 0
    """Seed for candidate shuffling when ``solve`` is not given one."""

    verbose: bool = False
    """Log individual candidate rejections at debug level."""

    max_verbose_logs: int = 64
    """Cap on verbose logs per attempt (and per configuration space pair)."""

    start_cell: tuple[int, int] | None = None
    """Root cell of the first room. Defaults to the rounded graph position."""

    @classmethod
    def from_dict_config(cls, cfg: DictConfig | dict | None) -> "SolverConfig":
        """Build from a (possibly partial) DictConfig. Unknown keys are ignored."""
        if cfg is None:
            return cls()
        if isinstance(cfg, DictConfig):
            cfg = OmegaConf.to_container(cfg, resolve=True)
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in cfg.items() if k in known}
        if values.get("start_cell") is not None:
            values["start_cell"] = tuple(int(v) for v in values["start_cell"])
        return cls(**values)
