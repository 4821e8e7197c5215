from fastapi import FastAPI, HTTPException, Depends, Request, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import re
import secrets

import uvicorn

from .admin import AdminController
from .aggregator import Aggregator
from .cache import MemoryCache
from .chat import DiscordClient
from .config import Settings, get_settings
from .database import Store
from .email_queue import EmailBatcher
from .events import ChangeBus
from .i18n import translate
from .jellyfin import JellyfinClient
from .ledger import RequestStatus, RequestsLedger
from .log import configure_logging
from .mailer import Mailer
from .messaging import DISCORD, EMAIL, DiscordUserChannel, EmailUserChannel, UserMessaging
from .notifier import UserNotifier
from .registration import EMAIL_PATTERN, RegistrationService, is_valid_username
from .driver import SyncDriver
from .trakt import TraktClient
from . import __version__


settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: Store
    bus: ChangeBus
    trakt: TraktClient
    jellyfin: JellyfinClient
    discord: DiscordClient
    batcher: EmailBatcher
    ledger: RequestsLedger
    driver: SyncDriver
    admin: AdminController
    notifier: UserNotifier
    registration: RegistrationService


async def build_services(settings: Settings) -> Services:
    """Wire the whole object graph. Nothing is started here except the bus."""
    bus = ChangeBus()
    store = Store(settings.database_path, publisher=bus.publish)
    await store.connect()
    await store.init_db()
    bus.start()

    trakt = TraktClient(settings.trakt_client_id, base_url=settings.trakt_base_url, cache=MemoryCache())
    jellyfin = await JellyfinClient.create(
        settings.jellyfin_url,
        token=settings.jellyfin_token,
        username=settings.jellyfin_username,
        password=settings.jellyfin_password,
    )
    discord = DiscordClient(
        settings.discord_bot_token, api_url=settings.discord_api_url, guild_id=settings.discord_guild_id
    )
    await discord.connect()
    mailer = Mailer(
        settings.smtp_host,
        settings.smtp_port,
        settings.smtp_user,
        settings.smtp_password,
        settings.smtp_from,
        from_name=settings.service_name,
    )

    email_channel = EmailUserChannel(
        mailer, locale=settings.locale, service_name=settings.service_name, service_url=settings.server_url
    )
    batcher = EmailBatcher(email_channel.send_batch, debounce_seconds=settings.email_debounce_seconds)
    email_channel.batcher = batcher
    messaging = UserMessaging(
        {
            DISCORD: DiscordUserChannel(
                discord, locale=settings.locale, service_name=settings.service_name, service_url=settings.server_url
            ),
            EMAIL: email_channel,
        }
    )

    ledger = RequestsLedger(store)
    aggregator = Aggregator(trakt, ledger, store, config=settings.sync_config())
    driver = SyncDriver(
        store,
        aggregator,
        ledger,
        jellyfin,
        interval_seconds=settings.sync_interval_seconds,
        concurrency=settings.sync_concurrency,
    )
    admin = AdminController(
        discord, ledger, store, bus, settings.discord_channel_id, settings.admin_ids, locale=settings.locale
    )
    notifier = UserNotifier(ledger, messaging, bus)
    registration = RegistrationService(
        store, jellyfin, messaging, admin, bus, locale=settings.locale, discord=discord
    )

    return Services(
        store=store,
        bus=bus,
        trakt=trakt,
        jellyfin=jellyfin,
        discord=discord,
        batcher=batcher,
        ledger=ledger,
        driver=driver,
        admin=admin,
        notifier=notifier,
        registration=registration,
    )


async def shutdown_services(services: Services) -> None:
    await services.driver.stop()
    await services.discord.stop_polling()
    services.registration.close()
    services.notifier.close()
    services.admin.close()
    await services.batcher.close()
    await services.bus.stop()
    await services.discord.close()
    await services.jellyfin.close()
    await services.trakt.close()
    await services.store.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build and start every component on startup, stop them in reverse on shutdown."""
    configure_logging(settings.log_level)
    services = await build_services(settings)
    services.admin.start()
    services.notifier.start()
    services.registration.start()
    services.discord.start_polling(settings.reaction_poll_seconds)
    services.driver.start(run_immediately=settings.run_sync_on_startup)
    app.state.services = services
    logger.info(f"{settings.service_name} started")
    try:
        yield
    finally:
        await shutdown_services(services)
        logger.info(f"{settings.service_name} stopped")


app = FastAPI(
    title="Wantarr",
    description="Turns Trakt watch activity into media requests tracked against a Jellyfin library",
    version=__version__,
    lifespan=lifespan,
)


# --- Dependencies ---

def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return services


def verify_sync_token(token: str | None = Query(None, alias="token")):
    """Verify the token protecting the sync and listing endpoints."""
    if not settings.sync_token:
        # No token configured, allow access
        return True

    if not token:
        raise HTTPException(
            status_code=401,
            detail="Sync token required. Add ?token=YOUR_TOKEN to the URL."
        )

    if not secrets.compare_digest(token, settings.sync_token):
        raise HTTPException(status_code=401, detail="Invalid sync token")

    return True


# --- Health ---

@app.get("/api/health")
async def health():
    return {"status": "ok", "version": __version__}


# --- Registration ---

class RegistrationForm(BaseModel):
    email: str
    username: str


@app.post("/api/register")
async def register(data: RegistrationForm, services: Services = Depends(get_services)):
    """Ask the admins to open a media server account for an email user."""
    email = data.email.strip()
    username = data.username.strip()

    if not re.match(EMAIL_PATTERN, email):
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": translate(settings.locale, "error.invalid_email")},
        )
    if not is_valid_username(username):
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": translate(settings.locale, "error.invalid_username")},
        )

    await services.registration.handle_join(EMAIL, email, username)
    await services.registration.request_registration(EMAIL, email, username)
    return {
        "success": True,
        "message": translate(settings.locale, "registration.requested", service=settings.service_name),
    }


# --- Sync ---

@app.post("/api/sync")
async def sync(services: Services = Depends(get_services), _: bool = Depends(verify_sync_token)):
    """Run a full sync cycle now; waits for a running cycle to finish first."""
    report = await services.driver.run_once()
    return {
        "users": {user_id: [kind.value for kind in kinds] for user_id, kinds in report.synced.items()},
        "fulfilled": [request.id for request in report.fulfilled],
        "availability_failed": report.availability_failed,
    }


@app.get("/api/requests")
async def list_requests(
    status: RequestStatus | None = None,
    services: Services = Depends(get_services),
    _: bool = Depends(verify_sync_token),
):
    requests = await services.ledger.list(status)
    return {
        "requests": [
            {
                "id": request.id,
                "status": request.status.value,
                "thread_id": request.thread_id,
                "title": request.media.title if request.media else None,
                "type": request.media.type if request.media else None,
                "year": request.media.year if request.media else None,
                "season_number": request.media.season_number if request.media else None,
                "episode_number": request.media.episode_number if request.media else None,
                "created_at": request.created_at,
                "updated_at": request.updated_at,
            }
            for request in requests
        ]
    }


def run() -> None:
    uvicorn.run("wantarr.main:app", host="0.0.0.0", port=8000)
