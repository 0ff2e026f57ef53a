import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

log = logging.getLogger(__name__)

PERSONA_SECTIONS = ("tone", "style", "boundaries")
DEFAULT_PERSONA_PATH = Path(__file__).with_name("persona.yaml")


@dataclass
class Settings:
    discord_token: str
    openai_api_key: str
    model: str = "gpt-5.1"
    fast_model: str = "gpt-5-mini"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 768
    image_model: str = "gpt-image-1"
    mem_dir: Path = Path("mem")
    memory_db: Optional[Path] = None
    memory_backend: str = "sqlite"
    main_channel_id: str = ""
    entities_dir: Optional[Path] = None
    wake_word: str = "magpie"
    log_level: str = "INFO"
    guild_id: Optional[int] = None

    def __post_init__(self) -> None:
        self.mem_dir = Path(self.mem_dir)
        if self.memory_db is None:
            self.memory_db = self.mem_dir / "memory.db"
        if self.entities_dir is None:
            self.entities_dir = self.mem_dir / "entities"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        discord_token = env.get("DISCORD_TOKEN", "")
        openai_key = env.get("OPENAI_API_KEY", "")
        missing = [name for name, value in (("DISCORD_TOKEN", discord_token), ("OPENAI_API_KEY", openai_key)) if not value]
        if missing:
            raise SystemExit(f"Missing required environment variables: {', '.join(missing)}")

        dims_raw = env.get("EMBEDDING_DIMENSIONS", "768")
        guild_raw = env.get("DISCORD_GUILD_ID", "")
        backend = env.get("MEMORY_BACKEND", "sqlite").strip().lower()
        if backend not in {"sqlite", "memory"}:
            log.warning("unknown MEMORY_BACKEND %r, using sqlite", backend)
            backend = "sqlite"
        mem_dir = Path(env.get("MEM_DIR", "mem"))
        memory_db = env.get("MEMORY_DB")
        entities_dir = env.get("ENTITIES_DIR")
        return cls(
            discord_token=discord_token,
            openai_api_key=openai_key,
            model=env.get("MODEL", "gpt-5.1"),
            fast_model=env.get("FAST_MODEL", "gpt-5-mini"),
            embedding_model=env.get("EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_dimensions=int(dims_raw) if dims_raw.isdigit() else 768,
            image_model=env.get("IMAGE_MODEL", "gpt-image-1"),
            mem_dir=mem_dir,
            memory_db=Path(memory_db) if memory_db else None,
            memory_backend=backend,
            main_channel_id=env.get("MAIN_CHANNEL_ID", "").strip(),
            entities_dir=Path(entities_dir) if entities_dir else None,
            wake_word=(env.get("WAKE_WORD") or "magpie").strip().lower(),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            guild_id=int(guild_raw) if guild_raw.isdigit() else None,
        )


class PersonaConfig:
    """Persona prompt from YAML with a per-deployment override, reloaded on change."""

    def __init__(self, *, default_path: Path = DEFAULT_PERSONA_PATH, override_path: Optional[Path] = None) -> None:
        self.default_path = default_path
        self.override_path = override_path
        self._cached_prompt = ""
        self._default_mtime: Optional[float] = None
        self._override_mtime: Optional[float] = None
        self._load()

    def _read_config(self, path: Optional[Path]) -> Dict[str, List[str]]:
        if path is None or not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except Exception as exc:
            log.warning("failed to read persona config %s: %s", path, exc)
            return {}
        sections: Dict[str, List[str]] = {}
        if isinstance(raw, dict):
            for key, value in raw.items():
                slug = str(key).strip().lower()
                if isinstance(value, (list, tuple)):
                    lines = [" ".join(str(item or "").split()) for item in value if str(item or "").strip()]
                elif isinstance(value, str):
                    lines = [" ".join(value.split())]
                else:
                    lines = []
                if lines:
                    sections[slug] = lines
        return sections

    @staticmethod
    def _compose_prompt(data: Dict[str, List[str]]) -> str:
        lines: List[str] = []
        for key in PERSONA_SECTIONS:
            lines.extend(data.get(key) or [])
        return "\n".join(line.strip() for line in lines if line.strip())

    def _load(self) -> None:
        merged = dict(self._read_config(self.default_path))
        for key, lines in self._read_config(self.override_path).items():
            merged[key] = lines
        prompt = self._compose_prompt(merged)
        if prompt and prompt != self._cached_prompt:
            if self._cached_prompt:
                log.info("persona updated: %s", prompt[:120])
            self._cached_prompt = prompt

    @staticmethod
    def _mtime(path: Optional[Path]) -> Optional[float]:
        if path is None:
            return None
        try:
            return path.stat().st_mtime if path.exists() else None
        except OSError:
            return None

    def get_prompt(self) -> str:
        default_mtime = self._mtime(self.default_path)
        override_mtime = self._mtime(self.override_path)
        if default_mtime != self._default_mtime or override_mtime != self._override_mtime:
            self._default_mtime = default_mtime
            self._override_mtime = override_mtime
            self._load()
        return self._cached_prompt
