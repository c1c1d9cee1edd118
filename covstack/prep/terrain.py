"""Terrain covariates from a DEM via the SAGA GIS command line."""

import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import numpy as np
from scipy.ndimage import sobel

from ..errors import UnknownToolError
from ..raster import Raster, read_raster, stack_rasters, write_raster
from ..utils import setup_logger
from .stack import validate_reference_grid

logger = setup_logger(__name__)


class ToolGroup(str, Enum):
    """Groups of SAGA terrain tools run on the filled DEM."""
    BASIC = "basic"
    HYDROLOGIC = "hydrologic"
    CHANNEL_NETWORK = "channel_network"
    TERRAIN_CLASSIFICATION = "terrain_classification"
    MORPHOMETRIC = "morphometric"
    MRVBF = "mrvbf"


@dataclass(frozen=True)
class SagaTool:
    """A saga_cmd library/tool call with its DEM input and grid outputs."""
    library: str
    tool: str
    dem_param: str
    outputs: Tuple[str, ...]


def saga_tool(group: ToolGroup) -> SagaTool:
    """SAGA tool invoked for a tool group."""
    match group:
        case ToolGroup.BASIC:
            return SagaTool(
                "ta_compound", "0", "ELEVATION",
                ("SHADE", "SLOPE", "ASPECT", "HCURV", "VCURV", "CONVERGENCE",
                 "FLOW", "WETNESS", "LSFACTOR", "CHNL_BASE", "CHNL_DIST",
                 "VALL_DEPTH", "RSP")
            )
        case ToolGroup.HYDROLOGIC:
            return SagaTool("ta_hydrology", "15", "DEM", ("AREA", "SLOPE", "AREA_MOD", "TWI"))
        case ToolGroup.CHANNEL_NETWORK:
            return SagaTool("ta_channels", "5", "DEM", ("DIRECTION", "ORDER", "BASIN"))
        case ToolGroup.TERRAIN_CLASSIFICATION:
            return SagaTool("ta_morphometry", "22", "DEM", ("LANDFORMS",))
        case ToolGroup.MORPHOMETRIC:
            return SagaTool(
                "ta_morphometry", "23", "DEM",
                ("FEATURES", "PROFC", "PLANC", "LONGC", "CROSC", "MAXIC", "MINIC")
            )
        case ToolGroup.MRVBF:
            return SagaTool("ta_morphometry", "8", "DEM", ("MRVBF", "MRRTF"))


def parse_tool_groups(tools: Union[str, Sequence[str]]) -> List[ToolGroup]:
    """
    Resolve requested tool group names, expanding "all".

    Raises:
        UnknownToolError: If any name is not a known tool group
    """
    if isinstance(tools, str):
        tools = [tools]

    if "all" in tools:
        return list(ToolGroup)

    valid = {g.value for g in ToolGroup}
    invalid = [t for t in tools if t not in valid]
    if invalid:
        raise UnknownToolError(
            f"Invalid tools: {', '.join(invalid)}. Options: all, {', '.join(sorted(valid))}"
        )

    return [ToolGroup(t) for t in tools]


def run_saga(
    saga_path: Path,
    library: str,
    tool: str,
    params: dict,
    cores: int = 4,
    verbose: bool = True
) -> None:
    """Run one saga_cmd tool, raising CalledProcessError on failure."""
    cmd = [str(saga_path), f"-c={cores}", library, tool]
    for key, value in params.items():
        cmd.extend([f"-{key}", str(value)])

    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as e:
        logger.error(f"saga_cmd {library} {tool} failed: {e.stderr.strip()}")
        raise

    if verbose and result.stdout:
        logger.debug(result.stdout)


def _on_dem_grid(layer: Raster, dem: Raster) -> Raster:
    # SAGA output may drop the CRS; values are placed back on the DEM grid
    if layer.shape != dem.shape:
        raise ValueError(
            f"SAGA output {list(layer.names)} has shape {layer.shape}, expected {dem.shape}"
        )
    return Raster(layer.data, dem.transform, dem.crs, layer.names, layer.nodata)


def get_terrain_layers(
    dem: Raster,
    saga_path: Path,
    tools: Union[str, Sequence[str]] = "all",
    cores: int = 4,
    verbose: bool = True,
    work_dir: Path = None
) -> Raster:
    """
    Compute terrain covariates from a DEM with SAGA GIS.

    The DEM is sink-filled (Wang & Liu) first and every tool group runs on
    the filled surface.

    Args:
        dem: DEM in projected coordinates
        saga_path: Path to the saga_cmd executable
        tools: Tool group name(s), or "all"
        cores: Number of cores for SAGA
        verbose: Log progress messages
        work_dir: Directory for intermediate grids (temporary if None)

    Returns:
        Multi-band raster on the DEM grid: "dem_filled" followed by the
        outputs of the selected tool groups
    """
    validate_reference_grid(dem)

    saga_path = Path(saga_path)
    if not saga_path.exists():
        raise FileNotFoundError(f"saga_path does not exist: {saga_path}")

    groups = parse_tool_groups(tools)

    with tempfile.TemporaryDirectory(prefix="covstack_saga_") as tmp:
        work = Path(work_dir) if work_dir is not None else Path(tmp)
        work.mkdir(parents=True, exist_ok=True)

        dem_path = write_raster(dem.select([0]), work / "dem.tif")

        if verbose:
            logger.info("Filling DEM sinks (Wang & Liu)")
        filled_path = work / "dem_filled.tif"
        run_saga(saga_path, "ta_preprocessor", "4",
                 {"ELEV": dem_path, "FILLED": filled_path}, cores, verbose)
        layers = [_on_dem_grid(read_raster(filled_path, names=["dem_filled"]), dem)]

        seen = {"dem_filled"}
        for group in groups:
            if verbose:
                logger.info(f"Running SAGA tool group: {group.value}")

            tool = saga_tool(group)
            outputs = {param: work / f"{group.value}_{param.lower()}.tif" for param in tool.outputs}
            run_saga(saga_path, tool.library, tool.tool,
                     {tool.dem_param: filled_path, **outputs}, cores, verbose)

            for param, path in outputs.items():
                name = param.lower()
                if name in seen or not path.exists():
                    continue
                seen.add(name)
                layers.append(_on_dem_grid(read_raster(path, names=[name]), dem))

    if verbose:
        logger.info(f"Terrain covariates generated: {len(layers)} layers")

    return stack_rasters(layers)


def compute_slope_aspect(dem: Raster, algorithm: str = "horn") -> Raster:
    """
    Compute slope and aspect from digital elevation model.

    Args:
        dem: DEM in projected coordinates (first band is used)
        algorithm: Method for gradient calculation ("horn" or "simple")

    Returns:
        Two-band raster ("slope", "aspect") in degrees on the DEM grid
    """
    logger.info(f"Computing slope and aspect from {dem.names[0]}")

    elevation = dem.masked()[0]
    cell_x, cell_y = dem.res

    # Compute gradients using Sobel filter (Horn's method approximation)
    if algorithm == "horn":
        dz_dx = sobel(elevation, axis=1) / (8 * cell_x)
        dz_dy = sobel(elevation, axis=0) / (8 * cell_y)
    elif algorithm == "simple":
        dz_dy, dz_dx = np.gradient(elevation, cell_y, cell_x)
    else:
        raise ValueError(f"Unknown slope algorithm '{algorithm}'. Options: horn, simple")

    slope = np.degrees(np.arctan(np.sqrt(dz_dx**2 + dz_dy**2))).astype(np.float32)

    # Compass bearing (0 = North, 90 = East)
    aspect = np.degrees(np.arctan2(-dz_dy, dz_dx))
    aspect = ((90 - aspect) % 360).astype(np.float32)

    # Flat areas (slope ~ 0) have no aspect
    aspect[slope < 0.1] = -1

    logger.info(f"Slope range: {np.nanmin(slope):.1f}-{np.nanmax(slope):.1f} deg")

    return Raster(np.stack([slope, aspect]), dem.transform, dem.crs, ("slope", "aspect"), np.nan)
