import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger("config")

DEFAULT_STUN_URLS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]


def _parse_bool_env(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_list_env(name: str) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return []
    return [u.strip() for u in raw.split(",") if u.strip()]


def _load_file_ice_config() -> Dict[str, Any]:
    """Attempt to load ICE configuration from JSON file."""
    search_paths = []

    env_path = os.getenv("ICE_CONFIG_PATH")
    if env_path:
        candidate = Path(env_path)
        if candidate.is_file():
            search_paths.append(candidate)
        else:
            logger.warning("ICE_CONFIG_PATH %s is not a file, falling back to defaults", candidate)

    repo_default = Path(__file__).resolve().parent.parent / "ice_config.json"
    if repo_default.is_file():
        search_paths.append(repo_default)

    for path in search_paths:
        try:
            with path.open("r", encoding="utf-8") as fp:
                data = json.load(fp)
                if isinstance(data, dict):
                    logger.info("Loaded ICE config from %s", path)
                    return data
                logger.warning("ICE config file %s does not contain a JSON object", path)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse ICE config %s: %s", path, exc)
        except OSError as exc:
            logger.error("Failed to read ICE config %s: %s", path, exc)

    return {}


def normalize_ice_servers(servers: Any) -> List[Dict[str, Any]]:
    """Keeps well-formed relay descriptors, dropping blank URLs and empty entries."""
    result: List[Dict[str, Any]] = []
    if not isinstance(servers, list):
        return result
    for server in servers:
        if not isinstance(server, dict):
            continue
        urls = server.get("urls")
        if isinstance(urls, str):
            urls = [urls]
        if not isinstance(urls, list):
            continue
        urls = [u.strip() for u in urls if isinstance(u, str) and u.strip()]
        if not urls:
            continue
        result.append({
            "urls": urls,
            "username": server.get("username") or None,
            "credential": server.get("credential") or None,
        })
    return result


def get_initial_ice_config() -> Dict[str, Any]:
    """Build initial relay/rendezvous server list.

    Priority order:
      1. JSON file specified in ``ICE_CONFIG_PATH`` (if valid).
      2. Repository ``ice_config.json`` fallback.
      3. Environment variables ``STUN_URLS``, ``TURN_URLS`` etc.
      4. Built-in public STUN servers.

    The descriptors are never interpreted here, only passed through to the
    negotiation object.
    """

    config: Dict[str, Any] = {
        "ice_servers": [{"urls": list(DEFAULT_STUN_URLS), "username": None, "credential": None}],
    }

    file_config = _load_file_ice_config()
    if file_config.get("ice_servers") is not None:
        config["ice_servers"] = normalize_ice_servers(file_config["ice_servers"])

    stun_urls = _parse_list_env("STUN_URLS")
    if stun_urls:
        config["ice_servers"] = [s for s in config["ice_servers"]
                                 if not all(u.startswith("stun:") for u in s["urls"])]
        config["ice_servers"].insert(0, {"urls": stun_urls, "username": None, "credential": None})

    turn_urls = _parse_list_env("TURN_URLS")
    if turn_urls:
        config["ice_servers"].append({
            "urls": turn_urls,
            "username": os.getenv("TURN_USERNAME") or None,
            "credential": os.getenv("TURN_CREDENTIAL") or None,
        })

    return config


def get_session_config() -> Dict[str, Any]:
    """Get negotiation and signaling tunables from environment variables."""
    return {
        "connect_timeout": float(os.getenv("CONNECT_TIMEOUT", "30")),
        "poll_interval": float(os.getenv("SIGNAL_POLL_INTERVAL", "1.0")),
        "retention_seconds": float(os.getenv("SIGNAL_RETENTION_SECONDS", "1800")),
        "sweep_interval": float(os.getenv("SIGNAL_SWEEP_INTERVAL", "60")),
        "history_cap": int(os.getenv("SIGNAL_HISTORY_CAP", "50")),
        "session_id_digits": int(os.getenv("SESSION_ID_DIGITS", "6")),
    }


def _default_capture_devices() -> Dict[str, Optional[str]]:
    if sys.platform == "darwin":
        return {"video_device": "default:none", "video_format": "avfoundation",
                "audio_device": "none:default", "audio_format": "avfoundation"}
    if sys.platform.startswith("win"):
        return {"video_device": "video=Integrated Camera", "video_format": "dshow",
                "audio_device": None, "audio_format": None}
    return {"video_device": "/dev/video0", "video_format": "v4l2",
            "audio_device": "default", "audio_format": "pulse"}


def get_capture_config() -> Dict[str, Any]:
    """Get local capture device configuration from environment variables."""
    defaults = _default_capture_devices()
    return {
        "enabled": _parse_bool_env(os.getenv("CAPTURE_ENABLED"), default=True),
        "video_device": os.getenv("CAPTURE_VIDEO_DEVICE", defaults["video_device"]),
        "video_format": os.getenv("CAPTURE_VIDEO_FORMAT", defaults["video_format"]),
        "audio_device": os.getenv("CAPTURE_AUDIO_DEVICE", defaults["audio_device"]),
        "audio_format": os.getenv("CAPTURE_AUDIO_FORMAT", defaults["audio_format"]),
        "width": int(os.getenv("CAPTURE_WIDTH", "640")),
        "height": int(os.getenv("CAPTURE_HEIGHT", "480")),
        "fps": int(os.getenv("CAPTURE_FPS", "30")),
    }


def get_signaling_url() -> str:
    return os.getenv("SIGNALING_URL", "http://localhost:8104").rstrip("/")
