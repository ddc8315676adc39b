"""
Application procedures exposed over both channels.

    health.check       query         -> {"ok": true}
    chat.hello         query         -> "Hello from the chat router!"
    chat.sendMessage   mutation      -> TurnAccepted
    chat.onMessage     subscription  -> stream of MessageEvent
"""

from core.sync.engine import SyncEngine
from core.sync.models import SendMessageInput, SubscribeInput
from core.sync.router import OperationRouter


def build_health_router() -> OperationRouter:
    router = OperationRouter()

    @router.query("check")
    async def check(_):
        return {"ok": True}

    return router


def build_chat_router(engine: SyncEngine) -> OperationRouter:
    router = OperationRouter()

    @router.query("hello")
    async def hello(_):
        return "Hello from the chat router!"

    @router.mutation("sendMessage", input_model=SendMessageInput)
    async def send_message(data: SendMessageInput):
        return await engine.submit_turn(data.conversation_id, data.messages)

    @router.subscription("onMessage", input_model=SubscribeInput)
    def on_message(data: SubscribeInput):
        return engine.subscribe(data.conversation_id)

    return router


def build_app_router(engine: SyncEngine) -> OperationRouter:
    """Root router with every procedure the service exposes."""
    return (
        OperationRouter()
        .merge("health", build_health_router())
        .merge("chat", build_chat_router(engine))
    )
