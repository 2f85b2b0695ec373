"""
Utility functions for saving and loading checkpoints.

A checkpoint is split into two files: a JSON document describing the
structure (nested dicts, lists, scalars) and an NPZ archive holding every
array, keyed by its dotted path in the structure.
"""

import json
import os
from typing import Any, Dict

import numpy as np

# Serialized structure stored in the JSON file
SerializedMeta = Dict[str, Any]


def _serialize(obj: Any, arrays: Dict[str, np.ndarray], prefix: str = "") -> SerializedMeta:
    """
    Recursively turn ``obj`` into JSON-friendly metadata, moving arrays into ``arrays``.

    Args:
        obj: The object (dict, list, tuple, array, scalar) to serialize.
        arrays (Dict[str, np.ndarray]): Collects array data keyed by dotted path.
        prefix (str): Dotted path of ``obj`` inside the root object.

    Returns:
        SerializedMeta: Metadata describing ``obj``.
    """
    if isinstance(obj, dict):
        return {
            "_type": "dict",
            "items": {
                str(k): _serialize(v, arrays, f"{prefix}.{k}" if prefix else str(k))
                for k, v in obj.items()
            },
        }

    if isinstance(obj, (list, tuple)):
        items = [
            _serialize(v, arrays, f"{prefix}.{i}" if prefix else str(i))
            for i, v in enumerate(obj)
        ]
        return {
            "_type": "list" if isinstance(obj, list) else "tuple",
            "items": items,
        }

    if isinstance(obj, np.ndarray):
        key = prefix if prefix else "root_array"
        arrays[key] = obj
        return {"_type": "np.ndarray", "key": key}

    # numpy scalars (e.g. a float32 loss) are stored as plain Python scalars
    if isinstance(obj, np.generic):
        return {"_type": "scalar", "value": obj.item()}

    if isinstance(obj, (int, float, str, bool, type(None))):
        return {"_type": "scalar", "value": obj}

    raise TypeError(f"Cannot serialize object of type {type(obj).__name__}")


def _deserialize(meta: SerializedMeta, data: Dict[str, np.ndarray]) -> Any:
    t = meta["_type"]

    if t == "dict":
        return {k: _deserialize(v, data) for k, v in meta["items"].items()}

    if t in ("list", "tuple"):
        items = [_deserialize(x, data) for x in meta["items"]]
        return items if t == "list" else tuple(items)

    if t == "np.ndarray":
        return data[meta["key"]]

    if t == "scalar":
        return meta["value"]

    raise ValueError(f"Unknown meta type: {t}")


def save_checkpoint(
    obj: Any, json_path: str = "checkpoint.json", npz_path: str = "checkpoint.npz"
) -> None:
    """
    Save a Python object (variable values, optimizer state, etc.) into JSON and NPZ files.

    Args:
        obj: The object to serialize, typically ``{"parameters": ..., "optimizer": ...}``.
        json_path (str): Where to write the JSON metadata. Defaults to 'checkpoint.json'.
        npz_path (str): Where to write the NPZ arrays. Defaults to 'checkpoint.npz'.

    Raises:
        TypeError: If ``obj`` contains a value that is neither a container, an array nor a scalar.
        OSError: If there is an error writing to the specified files.

    Example:
        >>> save_checkpoint(
        ...     {"parameters": env.state_dict(), "epoch": 5},
        ...     "my_model.json",
        ...     "my_model.npz",
        ... )
    """
    arrays: Dict[str, np.ndarray] = {}
    meta = _serialize(obj, arrays)

    for path in (json_path, npz_path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    with open(json_path, "w") as f:
        json.dump(meta, f, indent=2)
    np.savez_compressed(npz_path, **arrays)


def load_checkpoint(
    json_path: str = "checkpoint.json",
    npz_path: str = "checkpoint.npz",
    weights_only: bool = False,
) -> Any:
    """
    Load an object previously written by `save_checkpoint`.

    Args:
        json_path (str): The JSON metadata file. Defaults to 'checkpoint.json'.
        npz_path (str): The NPZ array file. Defaults to 'checkpoint.npz'.
        weights_only (bool): If True, only return the "parameters" sub-dictionary. Defaults to False.

    Returns:
        Any: The reconstructed object.

    Raises:
        ValueError: If either file does not exist or the metadata has an unknown type.
    """
    if not os.path.exists(json_path):
        raise ValueError(f"Checkpoint file not found: {json_path}")
    if not os.path.exists(npz_path):
        raise ValueError(f"Checkpoint file not found: {npz_path}")

    with open(json_path, "r") as f:
        meta: SerializedMeta = json.load(f)

    with np.load(npz_path, allow_pickle=False) as npz_data:
        data = {key: np.array(npz_data[key]) for key in npz_data.files}

    obj = _deserialize(meta, data)
    if weights_only and isinstance(obj, dict):
        return obj.get("parameters", obj)
    return obj
