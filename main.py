import asyncio
import logging
import signal

from dotenv import load_dotenv

from magpie.agent import Agent
from magpie.config import PersonaConfig, Settings
from magpie.decision import ResponseDecisionGate
from magpie.entities import EntityResolver
from magpie.llm import LLMClient
from magpie.memory import MemoryService
from magpie.memory_store import InMemoryMemoryStore, SqliteMemoryStore
from magpie.pipeline import MessagePipeline
from magpie.scrapbook import ScrapbookService
from magpie.scrapbook_store import InMemoryScrapbookStore, SqliteScrapbookStore
from transports.discord_bot import run_discord_bot

log = logging.getLogger(__name__)


async def main():
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s :: %(message)s",
    )

    llm = LLMClient(
        api_key=settings.openai_api_key,
        model=settings.model,
        fast_model=settings.fast_model,
        embedding_model=settings.embedding_model,
        embedding_dimensions=settings.embedding_dimensions,
        image_model=settings.image_model,
    )

    if settings.memory_backend == "memory":
        memory_store = InMemoryMemoryStore()
        scrapbook_store = InMemoryScrapbookStore()
    else:
        settings.mem_dir.mkdir(parents=True, exist_ok=True)
        memory_store = SqliteMemoryStore(str(settings.memory_db))
        scrapbook_store = SqliteScrapbookStore(str(settings.memory_db))
    log.info("Using %s storage", settings.memory_backend)

    memory = MemoryService(memory_store, llm, model=settings.fast_model)
    scrapbook = ScrapbookService(scrapbook_store, llm, model=settings.fast_model)
    entities = EntityResolver(settings.entities_dir)
    persona = PersonaConfig(override_path=settings.mem_dir / "persona.yaml")
    gate = ResponseDecisionGate(llm, wake_word=settings.wake_word, model=settings.fast_model)

    def build_pipeline(channel):
        agent = Agent(
            llm,
            memory,
            scrapbook,
            entities,
            channel,
            persona=persona,
            fast_model=settings.fast_model,
        )
        return MessagePipeline(agent, gate, memory, scrapbook, main_channel_id=settings.main_channel_id)

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    discord_task = asyncio.create_task(run_discord_bot(build_pipeline, settings.discord_token, settings.guild_id))
    stop_task = asyncio.create_task(stop_event.wait())

    done, _ = await asyncio.wait({discord_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    if discord_task in done and discord_task.exception():
        log.error("Discord transport stopped: %s", discord_task.exception())

    stop_task.cancel()
    discord_task.cancel()
    try:
        await discord_task
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        log.debug("Discord transport exited with %s", exc)

    await llm.close()
    if isinstance(memory_store, SqliteMemoryStore):
        memory_store.close()
    if isinstance(scrapbook_store, SqliteScrapbookStore):
        scrapbook_store.close()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
