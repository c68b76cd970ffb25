import asyncio
import logging
import sys

from core.llm_config import load_config
from core.paths import SESSIONS_DIR
from engine.budget import ContextBudget
from engine.conversation import ConversationController
from engine.errors import PersistenceFailure
from engine.llm import LlamaBackend
from engine.sessions import SessionStore, format_size
from engine.supervisor import InferenceSupervisor

HELP = "commands: /save /history /load N /delete N /clear /autosave /quit"


def build_controller(config=None, sessions_dir=None):
    config = config or load_config()
    backend = LlamaBackend.from_config(config)
    supervisor = InferenceSupervisor(
        backend,
        budget=ContextBudget(small_context=config.get("small_context")),
        timeout=config["inference_timeout"],
    )
    store = SessionStore(sessions_dir or SESSIONS_DIR)
    controller = ConversationController(
        supervisor,
        store,
        answer_style=config["answer_style"],
        auto_save=config["auto_save"],
    )
    backend.trace = controller.sig_trace.emit
    return controller


async def _run(controller, config):
    printed = 0

    def flush():
        nonlocal printed
        for line in controller.messages[printed:]:
            print(line)
        printed = len(controller.messages)

    controller.sig_transcript.connect(lambda _msgs: flush())
    controller.sig_error.connect(lambda msg: print(f"[error] {msg}", file=sys.stderr))

    flush()
    await controller.auto_load(config["models_dir"], config["current_model_filename"] or None)
    print(HELP)

    while True:
        try:
            line = (await asyncio.to_thread(input, "> ")).strip()
        except EOFError:
            break
        if not line:
            continue
        if line == "/quit":
            break
        if line == "/save":
            session = controller.save()
            if session is not None:
                print(f"saved: {session.title}")
        elif line == "/history":
            for idx, session in enumerate(controller.store.list(), start=1):
                size = format_size(controller.store.size_of(session.id))
                print(f"{idx}. {session.title}  ({session.last_chat_at:%Y-%m-%d %H:%M}, {size})")
        elif line.startswith(("/load ", "/delete ")):
            command, _, arg = line.partition(" ")
            sessions = controller.store.list()
            try:
                session = sessions[int(arg) - 1]
            except (ValueError, IndexError):
                print("no such session")
                continue
            if command == "/load":
                printed = 0
                await controller.load_session(session)
            else:
                try:
                    controller.store.delete(session.id)
                except PersistenceFailure as exc:
                    print(f"[error] {exc}", file=sys.stderr)
        elif line == "/clear":
            printed = 0
            await controller.clear()
        elif line == "/autosave":
            controller.set_auto_save(not controller.auto_save)
            print(f"auto-save {'on' if controller.auto_save else 'off'}")
        elif line.startswith("/"):
            print(HELP)
        else:
            await controller.submit_turn(line)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = load_config()
    controller = build_controller(config)
    asyncio.run(_run(controller, config))


if __name__ == "__main__":
    main()
