import pickle
from pathlib import Path

import gurobipy as gp

from models import Parameters


def save_parameters(params: Parameters, path) -> Path:
    """Pickle prepared Parameters (network matrices included) to `path`."""
    path = Path(path).with_suffix(".pkl")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        pickle.dump(params, f, protocol=pickle.HIGHEST_PROTOCOL)
    return path


def load_parameters(path) -> Parameters:
    with open(Path(path).with_suffix(".pkl"), "rb") as f:
        params = pickle.load(f)
    if not isinstance(params, Parameters):
        raise TypeError(f"{path} does not contain Parameters but {type(params).__name__}")
    return params


def save_model(model: gp.Model, base_path, fmt: str = "lp") -> Path:
    """
    Write a built model in a Gurobi-supported format (lp, mps, ...) for
    inspection. Returns the written path.
    """
    model_path = Path(base_path).with_suffix(f".{fmt}")
    model_path.parent.mkdir(parents=True, exist_ok=True)
    model.write(str(model_path))
    return model_path
