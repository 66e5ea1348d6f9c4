# Copyright (c) Microsoft. All rights reserved.

"""SSO Agent Host Server - wires the adapter, the proactive subsystem and the HTTP API"""

# --- Imports ---
import asyncio
import logging
import socket
from os import environ
from typing import Optional

from aiohttp.web import Application, Request, Response, run_app
from aiohttp.web_middlewares import middleware as web_middleware
from microsoft_agents.activity import load_configuration_from_env
from microsoft_agents.authentication.msal import MsalConnectionManager
from microsoft_agents.hosting.aiohttp import (
    CloudAdapter,
    jwt_authorization_middleware,
    start_agent_process,
)
from microsoft_agents.hosting.core import (
    AgentApplication,
    AgentAuthConfiguration,
    AuthenticationConstants,
    Authorization,
    ClaimsIdentity,
    MemoryStorage,
    TurnContext,
    TurnState,
)

from sso_agent.api import TokenApi, add_api_routes
from sso_agent.commands import CommandRouter
from sso_agent.config import Settings, get_settings
from sso_agent.dialogs import MainDialog
from sso_agent.messaging import safe_send_activity
from sso_agent.observability import ObservabilityContext
from sso_agent.proactive.scheduler import BackgroundScheduler
from sso_agent.proactive.session import ProactiveSession
from sso_agent.proactive.token_broker import TokenBroker
from sso_agent.storage.base import ContextBackend, TaskBackend
from sso_agent.storage.context_store import ConversationContextStore
from sso_agent.storage.memory import InMemoryContextBackend, InMemoryTaskBackend

logger = logging.getLogger(__name__)

agents_sdk_config = load_configuration_from_env(environ)

TEAMS_SYSTEM_TAGS = ("<addmember>", "<removemember>", "<topicupdate>", "<historyupdate>")


# --- Public API ---
def create_and_run_host(settings: Optional[Settings] = None):
    """Create and run the SSO agent host"""
    settings = settings or get_settings()
    settings.configure_logging()

    host = SsoAgentHost(settings)
    auth_config = host.create_auth_configuration()
    host.start_server(auth_config)


# --- SSO Agent Host ---
class SsoAgentHost:
    """Host for the SSO agent.

    Owns the SDK objects (adapter, authorization, application) and the
    components built on top of them: the context store, the token broker,
    the background scheduler, the command router and the default dialog.
    """

    # --- Initialization ---
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

        self.auth_handler_name = self.settings.bot.auth_handler_name
        if self.auth_handler_name:
            logger.info(f"🔐 Using auth handler: {self.auth_handler_name}")
        else:
            logger.info("🔓 No auth handler configured (AUTH_HANDLER_NAME not set)")

        self.storage = MemoryStorage()
        self.connection_manager = MsalConnectionManager(**agents_sdk_config)
        self.adapter = CloudAdapter(connection_manager=self.connection_manager)
        self.agent_app_id = self.settings.bot.app_id

        self.authorization = Authorization(
            self.storage, self.connection_manager, **agents_sdk_config
        )
        self.agent_app = AgentApplication[TurnState](
            storage=self.storage,
            adapter=self.adapter,
            authorization=self.authorization,
            **agents_sdk_config,
        )

        self._pg_storage = None
        self._scheduler_task: Optional[asyncio.Task] = None
        self.build_components(InMemoryContextBackend(), InMemoryTaskBackend())
        self._setup_handlers()
        logger.info("✅ Message handlers registered successfully")

    def build_components(self, context_backend: ContextBackend, task_backend: TaskBackend):
        """(Re)build the proactive subsystem on top of the given persistence backends."""
        self.store = ConversationContextStore(context_backend)
        self.session = ProactiveSession(
            self.adapter,
            app_id=self.agent_app_id,
            timeout_seconds=self.settings.scheduler.proactive_timeout_seconds,
        )
        self.broker = TokenBroker(self.store, self.session, self.settings.bot.connection_name)
        self.scheduler = BackgroundScheduler(
            self.session,
            self.broker,
            backend=task_backend,
            interval_seconds=self.settings.scheduler.interval_seconds,
        )
        self.commands = CommandRouter(
            self.store,
            self.broker,
            self.scheduler if self.settings.scheduler.enabled else None,
            task_delay_minutes=self.settings.scheduler.task_delay_minutes,
            sign_out=self._sign_out,
        )
        self.dialog = MainDialog(
            self._dialog_token,
            sign_in_timeout_seconds=self.settings.sign_in_timeout_seconds,
        )
        self.api = TokenApi(
            self.store,
            self.broker,
            self.scheduler,
            batch_limit=self.settings.batch_limit,
        )

    async def _dialog_token(self, context: TurnContext) -> Optional[str]:
        """Token for the live turn: the auth handler when configured, else the broker."""
        if self.auth_handler_name:
            response = await self.agent_app.auth.get_token(context, self.auth_handler_name)
            return getattr(response, "token", None) if response else None

        result = await self.broker.acquire_in_context(context, context.activity.from_property.id)
        return result.token if result.success else None

    async def _sign_out(self, context: TurnContext) -> bool:
        """Sign the turn's user out through the auth handler when configured, else the broker."""
        user_id = context.activity.from_property.id
        if self.auth_handler_name:
            await self.agent_app.auth.sign_out(context, self.auth_handler_name)
            await self.store.reset_token_status(user_id)
            return True
        return await self.broker.sign_out_in_context(context, user_id)

    # --- Handlers (Messages) ---
    def _setup_handlers(self):
        """Setup message handlers"""
        # Configure auth handlers - only required when auth_handler_name is set
        handler_config = {"auth_handlers": [self.auth_handler_name]} if self.auth_handler_name else {}

        async def help_handler(context: TurnContext, _: TurnState):
            await self.store.record(context)
            commands = "\n".join(f"• `{c}`" for c in self.commands.commands)
            await context.send_activity(
                "👋 **Hi there!** I'm your single sign-on assistant. "
                "Send me any message to sign in and see your calendar.\n\n"
                f"You can also try:\n{commands}"
            )

        self.agent_app.conversation_update("membersAdded", **handler_config)(help_handler)
        self.agent_app.message("/help", **handler_config)(help_handler)

        @self.agent_app.activity("message", **handler_config)
        async def on_message(context: TurnContext, _: TurnState):
            try:
                await self.store.record(context)

                with ObservabilityContext.for_turn(context):
                    user_message = (context.activity.text or "").strip()

                    # Skip Teams system messages (roster changes, etc.)
                    if user_message.startswith("<") and any(
                        tag in user_message.lower() for tag in TEAMS_SYSTEM_TAGS
                    ):
                        logger.info("🔇 Ignoring Teams system message")
                        return

                    logger.info(f"📨 {user_message}")
                    if await self.commands.handle(context):
                        return
                    await self.dialog.run(context)

            except Exception as e:
                logger.error(f"❌ Error: {e}")
                await safe_send_activity(context, f"Sorry, I encountered an error: {str(e)}")

    # --- Startup ---
    async def initialize(self):
        """Attach persistent storage (if configured) and start the background scheduler."""
        storage_settings = self.settings.storage
        if storage_settings.use_postgres:
            from sso_agent.storage.pg_storage import get_storage

            self._pg_storage = await get_storage(storage_settings.dsn or None)
            self.build_components(self._pg_storage, self._pg_storage)
            logger.info("🐘 Using PostgreSQL for contexts and scheduled tasks")

        if self.settings.scheduler.enabled:
            self._scheduler_task = asyncio.create_task(self.scheduler.start())
        else:
            logger.info("⏰ Background scheduler disabled (SCHEDULER_ENABLED=false)")

    # --- Authentication ---
    def create_auth_configuration(self) -> AgentAuthConfiguration | None:
        bot = self.settings.bot
        if bot.is_valid:
            logger.info("🔒 Using Client Credentials authentication")
            return AgentAuthConfiguration(
                client_id=bot.app_id,
                tenant_id=bot.tenant_id,
                client_secret=bot.client_secret,
                scopes=["5a807f24-c9de-44ee-a3a7-329e88a00ffc/.default"],
            )

        if environ.get("BEARER_TOKEN"):
            logger.info("🔑 Anonymous dev mode")
        else:
            logger.warning("⚠️ No auth env vars; running anonymous")
        return None

    # --- Server ---
    def create_app(self, auth_configuration: AgentAuthConfiguration | None = None) -> Application:
        async def entry_point(req: Request) -> Response:
            return await start_agent_process(
                req, req.app["agent_app"], req.app["adapter"]
            )

        middlewares = []
        if auth_configuration:
            middlewares.append(jwt_authorization_middleware)

        @web_middleware
        async def anonymous_claims(request, handler):
            if not auth_configuration:
                request["claims_identity"] = ClaimsIdentity(
                    {
                        AuthenticationConstants.AUDIENCE_CLAIM: "anonymous",
                        AuthenticationConstants.APP_ID_CLAIM: "anonymous-app",
                    },
                    False,
                    "Anonymous",
                )
            return await handler(request)

        middlewares.append(anonymous_claims)
        app = Application(middlewares=middlewares)

        app.router.add_post("/api/messages", entry_point)
        app.router.add_get("/api/messages", lambda _: Response(status=200))
        # Resolved per request so a storage swap at startup is picked up
        add_api_routes(app, lambda: self.api)

        app["agent_configuration"] = auth_configuration
        app["agent_app"] = self.agent_app
        app["adapter"] = self.agent_app.adapter

        app.on_startup.append(lambda app: self.initialize())
        app.on_shutdown.append(lambda app: self.cleanup())
        return app

    def start_server(self, auth_configuration: AgentAuthConfiguration | None = None):
        app = self.create_app(auth_configuration)

        desired_port = self.settings.port
        port = desired_port

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.settimeout(0.5)
            if s.connect_ex(("127.0.0.1", desired_port)) == 0:
                port = desired_port + 1

        print("=" * 80)
        print("🏢 SSO Agent")
        print("=" * 80)
        print(f"🔒 Auth: {'Enabled' if auth_configuration else 'Anonymous'}")
        print(f"🚀 Server: localhost:{port}")
        print(f"📚 Endpoint: http://localhost:{port}/api/messages")
        print(f"❤️  Health: http://localhost:{port}/health\n")

        try:
            run_app(app, host="localhost", port=port, handle_signals=True)
        except KeyboardInterrupt:
            print("\n👋 Server stopped")

    # --- Cleanup ---
    async def cleanup(self):
        await self.scheduler.stop()
        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
        self._scheduler_task = None

        if self._pg_storage:
            try:
                await self._pg_storage.close()
            except Exception as e:
                logger.error(f"Cleanup error: {e}")
