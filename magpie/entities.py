import asyncio
import base64
import logging
import random
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from .models import ReferenceImage

log = logging.getLogger(__name__)

MAX_REFERENCE_IMAGES_PER_ENTITY = 3
MATCH_THRESHOLD = 0.75
IMAGE_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


@dataclass
class ResolvedEntity:
    name: str
    reference_images: List[ReferenceImage] = field(default_factory=list)


@dataclass
class EntityResolution:
    entities: List[ResolvedEntity]
    original_prompt: str


class EntityResolver:
    """Finds reference images for people/things named in an image prompt.

    Each sub-directory of ``root`` is one entity; it holds images and an
    optional ``aliases.yaml`` list of other names it goes by.
    """

    def __init__(self, root: Path, *, threshold: float = MATCH_THRESHOLD):
        self.root = Path(root)
        self.threshold = threshold

    def list_entities(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith("."))

    def _aliases(self, name: str) -> List[str]:
        path = self.root / name / "aliases.yaml"
        if not path.exists():
            return []
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except Exception as exc:
            log.warning("failed to read aliases for %s: %s", name, exc)
            return []
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list):
            return []
        return [str(item).strip() for item in raw if str(item or "").strip()]

    def _search_terms(self) -> List[Tuple[str, str]]:
        terms: List[Tuple[str, str]] = []
        for name in self.list_entities():
            terms.append((name.lower(), name))
            terms.extend((alias.lower(), name) for alias in self._aliases(name))
        return terms

    @staticmethod
    def _words(text: str) -> List[str]:
        return [w for w in re.findall(r"[\w'-]+", (text or "").lower()) if len(w) >= 2]

    def match(self, prompt: str) -> Dict[str, float]:
        """Entity name -> best match score for words in ``prompt``."""
        terms = self._search_terms()
        if not terms:
            return {}
        matched: Dict[str, float] = {}
        for word in self._words(prompt):
            for term, name in terms:
                score = SequenceMatcher(None, word, term).ratio()
                if score >= self.threshold and score > matched.get(name, 0.0):
                    matched[name] = score
        return matched

    def _load_images(self, name: str) -> List[ReferenceImage]:
        folder = self.root / name
        files = [p for p in folder.iterdir() if p.suffix.lower() in IMAGE_TYPES]
        if len(files) > MAX_REFERENCE_IMAGES_PER_ENTITY:
            files = random.sample(files, MAX_REFERENCE_IMAGES_PER_ENTITY)
        images = []
        for path in files:
            try:
                data = base64.b64encode(path.read_bytes()).decode("ascii")
            except OSError as exc:
                log.warning("failed to read reference image %s: %s", path, exc)
                continue
            images.append(ReferenceImage(data=data, mime_type=IMAGE_TYPES[path.suffix.lower()]))
        return images

    async def resolve(self, prompt: str) -> Optional[EntityResolution]:
        loop = asyncio.get_running_loop()
        matched = await loop.run_in_executor(None, self.match, prompt)
        if not matched:
            return None
        log.info("Matched entities in prompt: %s", matched)
        entities: List[ResolvedEntity] = []
        for name in matched:
            images = await loop.run_in_executor(None, self._load_images, name)
            if not images:
                log.warning("Matched entity %s has no usable images", name)
                continue
            entities.append(ResolvedEntity(name=name, reference_images=images))
        if not entities:
            return None
        return EntityResolution(entities=entities, original_prompt=prompt)

    @staticmethod
    def build_prompt_with_references(resolution: EntityResolution) -> Tuple[str, List[ReferenceImage]]:
        sections = []
        images: List[ReferenceImage] = []
        for entity in resolution.entities:
            count = len(entity.reference_images)
            plural = "s" if count != 1 else ""
            sections.append(
                f"Reference images of {entity.name} (use as references for generation, "
                f"not to be directly pasted): [{count} image{plural} attached]"
            )
            images.extend(entity.reference_images)
        return "\n".join(sections) + "\n\n" + resolution.original_prompt, images
