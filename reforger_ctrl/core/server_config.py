"""Render and read the dedicated server's native ``server.json``."""

from __future__ import annotations

import json
from dataclasses import fields
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from reforger_ctrl.common.constants import DEFAULT_GAME_PORT, DEFAULT_QUERY_PORT, DEFAULT_RCON_PORT
from reforger_ctrl.common.errors import ConfigValidationError
from reforger_ctrl.core.models import Mod, RconPermission, ServerConfig

# RCON-reported setting name -> (config field, converter)
DRIFT_FIELDS: Dict[str, Tuple[str, Any]] = {
    "name": ("name", str),
    "maxPlayers": ("max_players", int),
    "visible": ("visible", lambda value: str(value).strip().lower() in ("1", "true", "yes")),
    "scenarioId": ("scenario_id", str),
    "serverMaxViewDistance": ("server_max_view_distance", int),
    "networkViewDistance": ("network_view_distance", int),
    "disableThirdPerson": ("disable_third_person", lambda value: str(value).strip().lower() in ("1", "true", "yes")),
}


def validate_config(config: ServerConfig) -> None:
    if not config.name.strip():
        raise ConfigValidationError("Server name must not be empty")
    for label, port in (("bind_port", config.bind_port), ("public_port", config.public_port),
                        ("steam_query_port", config.steam_query_port), ("rcon_port", config.rcon_port)):
        if not 1 <= int(port) <= 65535:
            raise ConfigValidationError(f"{label} must be between 1 and 65535, got {port}")
    if config.max_players < 1:
        raise ConfigValidationError(f"max_players must be positive, got {config.max_players}")


def build_server_document(config: ServerConfig, mods: Iterable[Mod] = ()) -> Dict[str, Any]:
    """Build the ``server.json`` document; mods are written in load order."""
    enabled_mods = sorted((mod for mod in mods if mod.enabled), key=lambda mod: mod.load_order)
    document: Dict[str, Any] = {
        "bindAddress": config.bind_address or "0.0.0.0",
        "bindPort": config.bind_port,
        "publicAddress": config.public_address,
        "publicPort": config.public_port or config.bind_port,
        "a2s": {
            "address": config.steam_query_address or config.public_address,
            "port": config.steam_query_port,
        },
        "game": {
            "name": config.name,
            "password": config.password,
            "passwordAdmin": config.admin_password,
            "admins": list(config.admins),
            "scenarioId": config.scenario_id,
            "maxPlayers": config.max_players,
            "visible": config.visible,
            "crossPlatform": config.cross_platform,
            "supportedPlatforms": list(config.supported_platforms),
            "gameProperties": {
                "serverMaxViewDistance": config.server_max_view_distance,
                "serverMinGrassDistance": config.server_min_grass_distance,
                "networkViewDistance": config.network_view_distance,
                "disableThirdPerson": config.disable_third_person,
                "fastValidation": config.fast_validation,
                "battlEye": config.battleye,
                "VONDisableUI": config.von_disable_ui,
                "VONDisableDirectSpeechUI": config.von_disable_direct_speech_ui,
                "missionHeader": dict(config.mission_header),
            },
            "mods": [
                {"modId": mod.mod_id, "name": mod.name, "version": mod.version}
                for mod in enabled_mods
            ],
        },
        "operating": {
            "lobbyPlayerSynchronise": config.lobby_player_synchronise,
            "playerSaveTime": config.player_save_time,
            "aiLimit": config.ai_limit,
        },
    }
    if not config.a2s_enabled:
        del document["a2s"]
    if config.rcon_active:
        rcon: Dict[str, Any] = {
            "address": config.rcon_address,
            "port": config.rcon_port,
            "password": config.rcon_password,
            "permission": config.rcon_permission.value,
            "blacklist": list(config.rcon_blacklist),
            "whitelist": list(config.rcon_whitelist),
        }
        if config.rcon_max_clients:
            rcon["maxClients"] = config.rcon_max_clients
        document["rcon"] = rcon
    return document


def render_server_config(config: ServerConfig, mods: Iterable[Mod] = ()) -> str:
    validate_config(config)
    return json.dumps(build_server_document(config, mods), indent=2)


def parse_server_config(text: str) -> Tuple[ServerConfig, List[Mod]]:
    """Read a native ``server.json`` back into a config and its mod list."""
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigValidationError(f"Invalid server.json: {exc}") from exc
    if not isinstance(document, dict):
        raise ConfigValidationError("Invalid server.json: top level must be an object")

    defaults = ServerConfig()
    game = document.get("game") or {}
    props = game.get("gameProperties") or {}
    operating = document.get("operating") or {}
    a2s = document.get("a2s")
    rcon = document.get("rcon")

    config = ServerConfig(
        name=game.get("name") or defaults.name,
        password=game.get("password") or "",
        admin_password=game.get("passwordAdmin") or "",
        admins=list(game.get("admins") or []),
        bind_address=document.get("bindAddress") or defaults.bind_address,
        bind_port=int(document.get("bindPort") or DEFAULT_GAME_PORT),
        public_address=document.get("publicAddress") or "",
        public_port=int(document.get("publicPort") or document.get("bindPort") or DEFAULT_GAME_PORT),
        a2s_enabled=a2s is not None,
        steam_query_address=(a2s or {}).get("address") or "",
        steam_query_port=int((a2s or {}).get("port") or DEFAULT_QUERY_PORT),
        rcon_enabled=rcon is not None,
        rcon_address=(rcon or {}).get("address") or "",
        rcon_port=int((rcon or {}).get("port") or DEFAULT_RCON_PORT),
        rcon_password=(rcon or {}).get("password") or "",
        rcon_permission=RconPermission((rcon or {}).get("permission") or RconPermission.MONITOR.value),
        rcon_max_clients=(rcon or {}).get("maxClients"),
        rcon_blacklist=list((rcon or {}).get("blacklist") or []),
        rcon_whitelist=list((rcon or {}).get("whitelist") or []),
        scenario_id=game.get("scenarioId") or defaults.scenario_id,
        max_players=int(game.get("maxPlayers") or defaults.max_players),
        visible=game.get("visible", defaults.visible),
        cross_platform=bool(game.get("crossPlatform", False)),
        supported_platforms=list(game.get("supportedPlatforms") or []),
        server_max_view_distance=int(props.get("serverMaxViewDistance") or defaults.server_max_view_distance),
        server_min_grass_distance=int(props.get("serverMinGrassDistance") or defaults.server_min_grass_distance),
        network_view_distance=int(props.get("networkViewDistance") or defaults.network_view_distance),
        disable_third_person=props.get("disableThirdPerson", defaults.disable_third_person),
        fast_validation=props.get("fastValidation", defaults.fast_validation),
        battleye=props.get("battlEye", defaults.battleye),
        von_disable_ui=props.get("VONDisableUI", defaults.von_disable_ui),
        von_disable_direct_speech_ui=props.get("VONDisableDirectSpeechUI", defaults.von_disable_direct_speech_ui),
        mission_header=dict(props.get("missionHeader") or {}),
        lobby_player_synchronise=operating.get("lobbyPlayerSynchronise", defaults.lobby_player_synchronise),
        ai_limit=int(operating.get("aiLimit", defaults.ai_limit)),
        player_save_time=int(operating.get("playerSaveTime", defaults.player_save_time)),
    )
    mods = [
        Mod(mod_id=str(entry["modId"]), name=entry.get("name") or "unknown",
            version=entry.get("version") or "", load_order=index, enabled=True)
        for index, entry in enumerate(game.get("mods") or [])
        if entry.get("modId")
    ]
    return config, mods


def diff_configs(old: ServerConfig, new: ServerConfig) -> List[str]:
    """Names of the fields whose values differ."""
    return [f.name for f in fields(ServerConfig) if getattr(old, f.name) != getattr(new, f.name)]


def requires_restart(old: ServerConfig, new: ServerConfig) -> bool:
    # server.json is only read at launch, so any change needs a restart.
    return bool(diff_configs(old, new))


def detect_drift(desired: ServerConfig, live_settings: Mapping[str, str]) -> List[str]:
    """Return config fields whose live value disagrees with the desired one.

    Settings the server does not report are ignored.
    """
    drifted = []
    for key, (field_name, convert) in DRIFT_FIELDS.items():
        if key not in live_settings:
            continue
        try:
            live_value = convert(live_settings[key])
        except (TypeError, ValueError):
            drifted.append(field_name)
            continue
        if live_value != getattr(desired, field_name):
            drifted.append(field_name)
    return drifted
