"""
Configuration dataclasses for topopt-state.

This module contains all configuration classes for the mesh, the material
model, the topology-optimization parameters, region geometry, restart policy
and run-time settings. Every option has a named default; `ProblemConfig`
aggregates them and validates the whole tree before anything is allocated.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .errors import ConfigurationError

REGION_KINDS: Tuple[str, ...] = ("design", "fixed", "load", "solid")
DEFAULT_PRECEDENCE: Tuple[str, ...] = ("fixed", "load", "solid", "design")
FILTER_TYPES: Tuple[str, ...] = ("none", "linear", "projection")
PASSIVE_POLICIES: Tuple[str, ...] = ("solid", "void", "design")
RESTART_POLICIES: Tuple[str, ...] = ("abort", "fresh")
BACKENDS: Tuple[str, ...] = ("serial", "mpi")


@dataclass
class MeshConfig:
    """Structured-grid configuration.

    Attributes
    ----------
    extent : list of float
        Domain bounding box ``[x0, x1, y0, y1, z0, z1]``.
    resolution : list of int
        Number of elements along x, y and z.
    nlvls : int
        Number of multigrid levels used by the linear solver. Every axis with
        more than one element must be divisible by ``2**(nlvls-1)``.
    """
    extent: List[float] = field(default_factory=lambda: [0.0, 2.0, 0.0, 1.0, 0.0, 1.0])
    resolution: List[int] = field(default_factory=lambda: [32, 16, 16])
    nlvls: int = 4


@dataclass
class MaterialConfig:
    """Linear-elastic material with modified SIMP interpolation.

    Attributes
    ----------
    E : float
        Young's modulus of the solid phase.
    nu : float
        Poisson's ratio.
    Emin, Emax : float
        Stiffness scaling of void and solid material.
    """
    E: float = 1.0
    nu: float = 0.3
    Emin: float = 1.0e-9
    Emax: float = 1.0


@dataclass
class TOConfig:
    """Topology-optimization (SIMP) configuration.

    Attributes
    ----------
    volfrac : float
        Target volume fraction in (0, 1]; initial density of the design domain.
    penal : float
        SIMP penalization exponent.
    Xmin, Xmax : float
        Global bounds of the design variables.
    movlim : float
        Maximum change of a design variable per iteration.
    m : int
        Number of constraints.
    fscale : float
        Scaling applied to the objective and its sensitivities before the
        optimizer sees them.
    filter : str
        ``"none"``, ``"linear"`` (density filter) or ``"projection"``
        (density filter followed by smooth Heaviside projection).
    rmin : float
        Filter radius.
    beta, beta_final : float
        Initial and final projection sharpness.
    eta : float
        Projection threshold.
    max_iter : int
        Maximum number of design iterations.
    change_tol : float
        Stop once the max design change drops below this value.
    """
    volfrac: float = 0.12
    penal: float = 3.0
    Xmin: float = 0.0
    Xmax: float = 1.0
    movlim: float = 0.2
    m: int = 1
    fscale: float = 1.0
    filter: str = "linear"
    rmin: float = 0.08
    beta: float = 0.1
    beta_final: float = 48.0
    eta: float = 0.5
    max_iter: int = 400
    change_tol: float = 0.01


@dataclass
class GeometryConfig:
    """Region geometry inputs (one list of STL files per region kind).

    Attributes
    ----------
    design, fixed, load, solid : list of str
        Surface files bounding the design domain, the fixture region, the
        load-application region and the forced-solid region.
    load_vectors : list of list of float
        One ``[fx, fy, fz]`` per load file, handed to the FEM collaborator.
    precedence : list of str
        Resolution order when an element matches several regions.
    fixed_policy, load_policy : str
        How fixed / load passive elements are pinned: ``"solid"``,
        ``"void"`` or ``"design"`` (left free).
    """
    design: List[str] = field(default_factory=list)
    fixed: List[str] = field(default_factory=list)
    load: List[str] = field(default_factory=list)
    solid: List[str] = field(default_factory=list)
    load_vectors: List[List[float]] = field(default_factory=list)
    precedence: List[str] = field(default_factory=lambda: list(DEFAULT_PRECEDENCE))
    fixed_policy: str = "solid"
    load_policy: str = "solid"

    def files(self, kind: str) -> List[str]:
        return list(getattr(self, kind))


@dataclass
class RestartConfig:
    """Checkpoint / restart policy.

    Attributes
    ----------
    enabled : bool
        Try to resume from checkpoint files at startup.
    checkpoint : bool
        Write checkpoint files while running.
    directory : str
        Folder holding the two design slots and the MMA-state file.
    interval : int
        Write a checkpoint every ``interval`` accepted iterations.
    on_incomplete : str
        ``"abort"`` raises RestartError when only part of the checkpoint set
        is usable; ``"fresh"`` logs a warning and starts from scratch.
    """
    enabled: bool = False
    checkpoint: bool = True
    directory: str = "restart"
    interval: int = 1
    on_incomplete: str = "abort"


@dataclass
class RunConfig:
    """Run-time settings."""
    backend: str = "serial"      # "serial" or "mpi"
    output_dir: str = "output"
    log_level: str = "INFO"


@dataclass
class ProblemConfig:
    """Top-level configuration holding all inputs.

    Attributes
    ----------
    mesh : MeshConfig
    material : MaterialConfig
    to : TOConfig
    geometry : GeometryConfig
    restart : RestartConfig
    run : RunConfig
    """
    mesh: MeshConfig = field(default_factory=MeshConfig)
    material: MaterialConfig = field(default_factory=MaterialConfig)
    to: TOConfig = field(default_factory=TOConfig)
    geometry: GeometryConfig = field(default_factory=GeometryConfig)
    restart: RestartConfig = field(default_factory=RestartConfig)
    run: RunConfig = field(default_factory=RunConfig)

    @property
    def projection(self) -> bool:
        return self.to.filter == "projection"

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "ProblemConfig":
        """Build a config tree from a nested mapping (e.g. parsed YAML)."""
        return _build(cls, data or {}, "config")

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    def validate(self) -> "ProblemConfig":
        """Check every option; raises ConfigurationError on the first problem."""
        mesh, to, geo = self.mesh, self.to, self.geometry

        if len(mesh.extent) != 6:
            raise ConfigurationError(f"mesh.extent needs 6 values, got {len(mesh.extent)}")
        if len(mesh.resolution) != 3:
            raise ConfigurationError(f"mesh.resolution needs 3 values, got {len(mesh.resolution)}")
        for axis, count in zip("xyz", mesh.resolution):
            if int(count) <= 0:
                raise ConfigurationError(f"mesh.resolution along {axis} must be > 0, got {count}")
        for axis in range(3):
            lo, hi = mesh.extent[2 * axis], mesh.extent[2 * axis + 1]
            if not hi > lo:
                raise ConfigurationError(f"mesh.extent along {'xyz'[axis]} is empty: [{lo}, {hi}]")
        if int(mesh.nlvls) < 1:
            raise ConfigurationError(f"mesh.nlvls must be >= 1, got {mesh.nlvls}")

        mat = self.material
        if mat.E <= 0.0:
            raise ConfigurationError(f"material.E must be > 0, got {mat.E}")
        if not -1.0 < mat.nu < 0.5:
            raise ConfigurationError(f"material.nu must be in (-1, 0.5), got {mat.nu}")
        if not 0.0 <= mat.Emin < mat.Emax:
            raise ConfigurationError(f"need 0 <= material.Emin < material.Emax, got {mat.Emin}, {mat.Emax}")

        if not 0.0 < to.volfrac <= 1.0:
            raise ConfigurationError(f"to.volfrac must be in (0, 1], got {to.volfrac}")
        if not to.Xmin < to.Xmax:
            raise ConfigurationError(f"to.Xmin ({to.Xmin}) must be < to.Xmax ({to.Xmax})")
        if to.movlim <= 0.0:
            raise ConfigurationError(f"to.movlim must be > 0, got {to.movlim}")
        if int(to.m) < 1:
            raise ConfigurationError(f"to.m must be >= 1, got {to.m}")
        if to.filter not in FILTER_TYPES:
            raise ConfigurationError(f"to.filter must be one of {FILTER_TYPES}, got {to.filter!r}")
        if to.rmin < 0.0:
            raise ConfigurationError(f"to.rmin must be >= 0, got {to.rmin}")
        if to.beta <= 0.0 or to.beta > to.beta_final:
            raise ConfigurationError(f"need 0 < to.beta <= to.beta_final, got {to.beta}, {to.beta_final}")
        if not 0.0 <= to.eta <= 1.0:
            raise ConfigurationError(f"to.eta must be in [0, 1], got {to.eta}")
        if int(to.max_iter) < 0:
            raise ConfigurationError(f"to.max_iter must be >= 0, got {to.max_iter}")

        if sorted(geo.precedence) != sorted(REGION_KINDS):
            raise ConfigurationError(
                f"geometry.precedence must order exactly {REGION_KINDS}, got {geo.precedence}"
            )
        for name in ("fixed_policy", "load_policy"):
            if getattr(geo, name) not in PASSIVE_POLICIES:
                raise ConfigurationError(f"geometry.{name} must be one of {PASSIVE_POLICIES}")
        if geo.load_vectors and len(geo.load_vectors) != len(geo.load):
            raise ConfigurationError(
                f"geometry.load_vectors has {len(geo.load_vectors)} entries for {len(geo.load)} load files"
            )
        for vec in geo.load_vectors:
            if len(vec) != 3:
                raise ConfigurationError(f"geometry.load_vectors entries need 3 components, got {vec}")

        if int(self.restart.interval) < 1:
            raise ConfigurationError(f"restart.interval must be >= 1, got {self.restart.interval}")
        if self.restart.on_incomplete not in RESTART_POLICIES:
            raise ConfigurationError(f"restart.on_incomplete must be one of {RESTART_POLICIES}")
        if self.run.backend not in BACKENDS:
            raise ConfigurationError(f"run.backend must be one of {BACKENDS}")
        return self


def load_config(path: str | Path) -> ProblemConfig:
    """Load and validate a YAML problem configuration."""
    from ..utils.io_utils import load_yaml

    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    return ProblemConfig.from_dict(load_yaml(path)).validate()


def _build(cls, data: Dict[str, Any], where: str):
    if not isinstance(data, dict):
        raise ConfigurationError(f"{where} must be a mapping, got {type(data).__name__}")
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigurationError(f"Unknown option(s) in {where}: {', '.join(unknown)}")
    kwargs = {}
    defaults = cls()
    for name, value in data.items():
        current = getattr(defaults, name)
        if is_dataclass(current):
            kwargs[name] = _build(type(current), value or {}, f"{where}.{name}")
        else:
            kwargs[name] = value
    return cls(**kwargs)


def _dump(obj) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        out[f.name] = _dump(value) if is_dataclass(value) else value
    return out
