# main.py  (Fallout 76 community bot)

import discord
from discord.ext import commands, tasks
import os
import ssl
import sys
from dotenv import load_dotenv
import aiohttp
import asyncpg
from aiohttp import web
from discord import app_commands
import asyncio
from typing import Optional
from discord.utils import escape_markdown

from status_resolver import (
    DEFAULT_SELECTORS,
    DEFAULT_USER_AGENT,
    DEFAULT_RENDER_TIMEOUT_MS,
    Failure,
    FailureKind,
    Found,
    Indeterminate,
    NotListed,
    ResolverConfig,
    SelectorPair,
    StatusQuery,
    StatusResult,
    resolve,
)

# === Configuration ===
load_dotenv()

def getenv_int(name: str, default: int | None = None) -> int | None:
    val = os.getenv(name)
    try:
        return int(val) if val not in (None, "") else default
    except ValueError:
        return default

DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
DATABASE_URL  = os.getenv("DATABASE_URL")
DATABASE_SSL  = (os.getenv("DATABASE_SSL") or "require").strip().lower()

# Render sets PORT and RENDER_EXTERNAL_URL; the health server + pinger keep the free instance awake
PORT                = getenv_int("PORT", 8080)
RENDER_EXTERNAL_URL = os.getenv("RENDER_EXTERNAL_URL") or None
KEEP_ALIVE_MINUTES  = 5

# Slash commands sync instantly to this guild when set, globally otherwise
DEV_GUILD_ID = getenv_int("DEV_GUILD_ID")

PREFIX          = "!"
EVENT_ROLE_NAME = os.getenv("EVENT_ROLE_NAME") or "Eventek"
IGN_MAX_LENGTH  = 100

# Status page
STATUS_URL             = os.getenv("STATUS_URL") or "https://status.bethesda.net/en"
STATUS_SERVICE_NAME    = os.getenv("STATUS_SERVICE_NAME") or "Fallout 76"
STATUS_TIMEOUT_MS      = getenv_int("STATUS_TIMEOUT_MS", DEFAULT_RENDER_TIMEOUT_MS)
STATUS_USER_AGENT      = os.getenv("STATUS_USER_AGENT") or DEFAULT_USER_AGENT
STATUS_NAME_SELECTOR   = os.getenv("STATUS_NAME_SELECTOR") or None
STATUS_VALUE_SELECTOR  = os.getenv("STATUS_VALUE_SELECTOR") or None
CHROMIUM_PATH          = os.getenv("CHROMIUM_PATH") or None

# Short command key -> event display name
EVENTS_CONFIG = {
    "rumble": "Radiation Rumble",
    "sand": "Line In The Sand",
    "eviction": "Eviction Notice",
    "queen": "Scorched Earth",
    "colossal": "A Colossal Problem",
    "neuro": "Neurological Warfare",
    "seismic": "Seismic Activity",
    "burden": "Beasts of Burden",
    "campfire": "Campfire Tales",
    "caravan": "Caravan Skyline Drive",
    "pastimes": "Dangerous Pastimes",
    "guests": "Distinguished Guests",
    "encryptid": "Encryptid",
    "feed": "Feed the People",
    "range": "Free Range",
    "meditation": "Guided Meditation",
    "swamp": "Heart of the Swamp",
    "jail": "Jail Break",
    "lode": "Lode Baring",
    "jamboree": "Moonshine Jamboree",
    "mostwanted": "Most Wanted",
    "violent": "One Violent Night",
    "paradise": "Project Paradise",
    "safe": "Safe and Sound",
    "spin": "Spin The Wheel",
    "swarm": "Swarm of Suitors",
    "teatime": "Tea Time",
    "metal": "Test Your Metal",
    "path": "The Path to Enlightenment",
    "love": "The Tunnel of Love",
    "fever": "Uranium Fever",
}

# === Bot Setup ===
intents = discord.Intents.default()
intents.guilds = True
intents.members = True
intents.message_content = True

PING_MENTIONS = discord.AllowedMentions(roles=True, users=True, everyone=False)

# === Helpers ===
def database_ssl():
    if DATABASE_SSL in ("disable", "false", "0", "off"):
        return False
    # Hosted Postgres (Render, Heroku) uses certs we can't verify
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx

def build_resolver_config() -> ResolverConfig:
    selectors = DEFAULT_SELECTORS
    if STATUS_NAME_SELECTOR:
        selectors = (SelectorPair(STATUS_NAME_SELECTOR, STATUS_VALUE_SELECTOR),)
    return ResolverConfig(
        render_timeout_ms=STATUS_TIMEOUT_MS,
        user_agent=STATUS_USER_AGENT,
        selectors=selectors,
        executable_path=CHROMIUM_PATH,
    )

def build_status_query() -> StatusQuery:
    return StatusQuery(target_service_name=STATUS_SERVICE_NAME, source_url=STATUS_URL)

def format_status_reply(result: StatusResult, query: StatusQuery) -> str:
    name = query.target_service_name
    source = f"(Source: {query.source_url})"
    if isinstance(result, Found):
        return f"Bethesda Status Portal reports **{name}** is currently: **{result.status_text}**\n{source}"
    if isinstance(result, NotListed):
        return f"**{result.target_service_name}** is not listed on the Bethesda status page right now.\n{source}"
    if isinstance(result, Indeterminate):
        return f"I found **{name}** on the status page but couldn't read its status. Please check it directly.\n{source}"
    if isinstance(result, Failure) and result.kind is FailureKind.TIMEOUT:
        return "⏳ The Bethesda status page took too long to load. Please try again in a few minutes."
    if isinstance(result, Failure) and result.kind is FailureKind.RENDER_ENGINE_UNAVAILABLE:
        return "❌ Status checks are unavailable right now (the bot's browser isn't installed). Please let a server admin know."
    return f"❌ Sorry, I couldn't retrieve the status for {name}. There was an error interacting with the status page.\n{source}"

def lookup_event(value: str) -> str | None:
    key = (value or "").strip().lower()
    if key in EVENTS_CONFIG:
        return key
    for k, event_name in EVENTS_CONFIG.items():
        if event_name.lower() == key:
            return k
    return None

def event_choices(current: str) -> list[app_commands.Choice[str]]:
    current_lower = (current or "").strip().lower()
    out = []
    for key, event_name in EVENTS_CONFIG.items():
        if not current_lower or current_lower in event_name.lower() or key.startswith(current_lower):
            out.append(app_commands.Choice(name=event_name, value=key))
        if len(out) >= 25:
            break
    return out

def find_event_role(guild: discord.Guild) -> Optional[discord.Role]:
    wanted = EVENT_ROLE_NAME.lower()
    return discord.utils.find(lambda r: r.name.lower() == wanted, guild.roles)

def build_event_notification(role_id: int, user_mention: str, event_name: str, ign: str) -> str:
    return (
        f"Attention, <@&{role_id}>! {user_mention} has **{event_name}** active on their server!\n"
        f"Their IGN is **{escape_markdown(ign)}**. Feel free to join them!"
    )

def build_health_app() -> web.Application:
    async def health(_request):
        return web.Response(text="OK", status=200)

    app = web.Application()
    app.router.add_get("/", health)
    app.router.add_get("/health", health)
    return app

# === Bot class ===
class FalloutBot(commands.Bot):
    def __init__(self):
        super().__init__(command_prefix=PREFIX, intents=intents, case_insensitive=True)
        self.startup_failed = False
        self.db_pool: Optional[asyncpg.Pool] = None
        self._bootstrap_lock = asyncio.Lock()
        self._bootstrap_complete = False
        self.web_runner: web.AppRunner | None = None
        self.web_site: web.TCPSite | None = None

    async def setup_hook(self):
        # Health server first so the host sees the port bound while we connect
        await self.start_web_server()

        # DB pool
        try:
            self.db_pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=5, ssl=database_ssl())
            async with self.db_pool.acquire() as c:
                await c.execute('SELECT 1')
            print("[DB] Connected.")
        except Exception as e:
            print(f"[DB] FAILED: {e}")
            return

    async def start_web_server(self) -> None:
        if self.web_runner:
            return
        self.web_runner = web.AppRunner(build_health_app())
        await self.web_runner.setup()
        self.web_site = web.TCPSite(self.web_runner, '0.0.0.0', PORT)
        await self.web_site.start()
        print(f"[Web] Health server up on :{PORT} (GET /, GET /health).")

    async def ensure_bootstrap(self) -> None:
        if self._bootstrap_complete or not self.db_pool:
            return

        async with self._bootstrap_lock:
            if self._bootstrap_complete or not self.db_pool:
                return

            async with self.db_pool.acquire() as connection:
                await connection.execute('''
                    CREATE TABLE IF NOT EXISTS user_igns (
                        user_id TEXT PRIMARY KEY,
                        ign TEXT NOT NULL,
                        last_updated TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                    );
                ''')
            print("[DB] Table 'user_igns' ready.")

            # Sync slash commands once
            try:
                if DEV_GUILD_ID:
                    guild = discord.Object(id=DEV_GUILD_ID)
                    self.tree.copy_global_to(guild=guild)
                    synced = await self.tree.sync(guild=guild)
                    print(f"[Slash] Synced {len(synced)} command(s) to guild {DEV_GUILD_ID}")
                else:
                    synced = await self.tree.sync()
                    print(f"[Slash] Synced {len(synced)} global command(s) (can take up to an hour to show)")
            except Exception as e:
                print(f"[Slash] Sync failed: {e}")

            self._bootstrap_complete = True

    def _pool(self) -> asyncpg.Pool:
        if not self.db_pool:
            raise RuntimeError("Database pool is not available")
        return self.db_pool

    # --- IGN registry ---
    async def set_ign(self, user_id: int, ign: str) -> None:
        async with self._pool().acquire() as conn:
            await conn.execute(
                "INSERT INTO user_igns (user_id, ign) VALUES ($1, $2) "
                "ON CONFLICT (user_id) DO UPDATE SET ign = EXCLUDED.ign, last_updated = CURRENT_TIMESTAMP",
                str(user_id), ign,
            )

    async def get_ign(self, user_id: int) -> str | None:
        async with self._pool().acquire() as conn:
            return await conn.fetchval("SELECT ign FROM user_igns WHERE user_id = $1", str(user_id))

    async def remove_ign(self, user_id: int) -> bool:
        async with self._pool().acquire() as conn:
            status = await conn.execute("DELETE FROM user_igns WHERE user_id = $1", str(user_id))
        # asyncpg returns the command tag, e.g. "DELETE 1"
        try:
            return int(status.split()[-1]) > 0
        except (AttributeError, IndexError, ValueError):
            return False

    async def on_message(self, message: discord.Message):
        if message.author.bot or not message.guild:
            return

        content = message.content or ""
        if content.startswith(PREFIX):
            parts = content[len(PREFIX):].strip().split()
            key = parts[0].lower() if parts else ""
            if key in EVENTS_CONFIG:
                await self.ensure_bootstrap()
                ok, text = await prepare_event_ping(message.guild, message.author, key)
                if not ok:
                    await message.reply(text)
                    return
                try:
                    await message.channel.send(text, allowed_mentions=PING_MENTIONS)
                    print(f"[Event] Sent notification for {EVENTS_CONFIG[key]} triggered by {message.author}")
                except Exception as e:
                    print(f"[Event] Discord API error sending {EVENTS_CONFIG[key]} notification: {e}")
                    await message.reply("❌ Sorry, I couldn't send the notification message. Check my permissions.")
                return

        await super().on_message(message)


bot = FalloutBot()

# === Command logic shared by prefix + slash ===
async def addign_reply(user: discord.abc.User, ign: str) -> str:
    ign = (ign or "").strip()
    if not ign:
        return f"Please provide your In-Game Name (IGN) after the command.\nExample: `{PREFIX}addign Your IGN Here`"
    if len(ign) > IGN_MAX_LENGTH:
        return f"That IGN is too long. Please keep it under {IGN_MAX_LENGTH} characters."
    try:
        await bot.set_ign(user.id, ign)
    except Exception as e:
        print(f"[DB] Error during addign for {user}: {e}")
        return "❌ An error occurred while saving your IGN. Please try again later."
    print(f"[DB] Added/Updated IGN for {user}: {ign}")
    return f"✅ Your IGN has been successfully set/updated to: **{escape_markdown(ign)}**"

async def myign_reply(user: discord.abc.User) -> str:
    try:
        ign = await bot.get_ign(user.id)
    except Exception as e:
        print(f"[DB] Error during myign for {user}: {e}")
        return "❌ An error occurred while retrieving your IGN. Please try again later."
    if ign:
        return f"Your registered IGN is: **{escape_markdown(ign)}**"
    return f"You haven't registered an IGN yet. Use `{PREFIX}addign [your IGN]` or `/addign` to set one."

async def removeign_reply(user: discord.abc.User) -> str:
    try:
        removed = await bot.remove_ign(user.id)
    except Exception as e:
        print(f"[DB] Error during removeign for {user}: {e}")
        return "❌ An error occurred while trying to remove your IGN. Please try again later."
    if removed:
        print(f"[DB] Removed IGN for {user}")
        return "✅ Your registered IGN has been removed."
    return "You don't currently have an IGN registered to remove."

async def prepare_event_ping(guild: discord.Guild, user: discord.abc.User, event_key: str) -> tuple[bool, str]:
    """Returns (True, ping text) when the announcement can go out, else (False, reply for the user)."""
    event_name = EVENTS_CONFIG[event_key]
    try:
        ign = await bot.get_ign(user.id)
    except Exception as e:
        print(f"[DB] Error fetching IGN for event {event_key}: {e}")
        return False, "❌ An error occurred while checking your registered IGN. Please try again later."
    if not ign:
        return False, f"You need to set your IGN first using `{PREFIX}addign [your IGN]` before announcing events."

    role = find_event_role(guild)
    if not role:
        print(f"[WARN] Role '{EVENT_ROLE_NAME}' not found on server '{guild.name}' for event '{event_key}'")
        return False, f"❌ Error: The role \"@{EVENT_ROLE_NAME}\" was not found. Please check the configuration or create the role."

    return True, build_event_notification(role.id, user.mention, event_name, ign)

async def run_status_check() -> str:
    query = build_status_query()
    result = await resolve(query, build_resolver_config())
    return format_status_reply(result, query)

# === Events ===
@bot.event
async def on_ready():
    print(f'[READY] Logged in as {bot.user} (prefix "{PREFIX}")')
    if not bot.db_pool:
        print("[DB] No database pool; shutting down.")
        bot.startup_failed = True
        await bot.close()
        return
    try:
        await bot.ensure_bootstrap()
    except Exception as e:
        print(f"[DB] Fatal: could not ensure table 'user_igns' exists: {e}")
        bot.startup_failed = True
        await bot.close()
        return
    if RENDER_EXTERNAL_URL:
        if not keep_alive_ping.is_running():
            print(f"[KeepAlive] Pinging {RENDER_EXTERNAL_URL} every {KEEP_ALIVE_MINUTES} minutes")
            keep_alive_ping.start()
    else:
        print("[WARN] RENDER_EXTERNAL_URL is not set. Keep-alive pings are disabled.")

@bot.event
async def on_command_error(ctx: commands.Context, error: commands.CommandError):
    if isinstance(error, (commands.CommandNotFound, commands.NoPrivateMessage)):
        return
    print(f"[Command] !{getattr(ctx.command, 'name', 'unknown')} failed: {error}")
    try:
        await ctx.reply("Sorry, something went wrong running that command.")
    except Exception as e:
        print(f"[WARN] Could not send command error reply: {e}")

# Global slash error
@bot.tree.error
async def global_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    print(f"[Slash] /{getattr(interaction.command, 'name', 'unknown')} failed: {error}")
    try:
        if interaction.response.is_done():
            await interaction.followup.send("Sorry, something went wrong running that command.", ephemeral=True)
        else:
            await interaction.response.send_message("Sorry, something went wrong running that command.", ephemeral=True)
    except Exception as e:
        print(f"[WARN] Could not send slash error reply: {e}")

# ---------- Prefix commands ----------
@bot.command(name="addign")
@commands.guild_only()
async def addign_prefix(ctx: commands.Context, *, ign: str = ""):
    await bot.ensure_bootstrap()
    await ctx.reply(await addign_reply(ctx.author, ign))

@bot.command(name="myign")
@commands.guild_only()
async def myign_prefix(ctx: commands.Context):
    await bot.ensure_bootstrap()
    await ctx.reply(await myign_reply(ctx.author))

@bot.command(name="removeign")
@commands.guild_only()
async def removeign_prefix(ctx: commands.Context):
    await bot.ensure_bootstrap()
    await ctx.reply(await removeign_reply(ctx.author))

@bot.command(name="status")
@commands.guild_only()
async def status_prefix(ctx: commands.Context):
    print(f"[Status] {ctx.author} triggered {PREFIX}status")
    async with ctx.typing():
        reply = await run_status_check()
    await ctx.reply(reply)

# ---------- Slash commands ----------
@bot.tree.command(name="addign", description="Add or update your Fallout 76 In-Game Name (IGN). / Add meg vagy frissítsd a neved.")
@app_commands.describe(ign="Your In-Game Name. / A játékbeli neved.")
async def addign_slash(interaction: discord.Interaction, ign: str):
    await bot.ensure_bootstrap()
    await interaction.response.send_message(await addign_reply(interaction.user, ign), ephemeral=True)

@bot.tree.command(name="myign", description="Check your currently registered IGN. / Ellenőrizd a regisztrált IGN-ed.")
async def myign_slash(interaction: discord.Interaction):
    await bot.ensure_bootstrap()
    await interaction.response.send_message(await myign_reply(interaction.user), ephemeral=True)

@bot.tree.command(name="removeign", description="Remove your registered IGN. / Távolítsd el a regisztrált IGN-ed.")
async def removeign_slash(interaction: discord.Interaction):
    await bot.ensure_bootstrap()
    await interaction.response.send_message(await removeign_reply(interaction.user), ephemeral=True)

@bot.tree.command(name="status", description="Check the Fallout 76 server status. / A Fallout 76 szerverek állapota.")
async def status_slash(interaction: discord.Interaction):
    print(f"[Status] {interaction.user} triggered /status")
    # Rendering can take well past the 3s interaction window
    await interaction.response.defer(thinking=True)
    reply = await run_status_check()
    await interaction.followup.send(reply)

async def event_autocomplete(interaction: discord.Interaction, current: str):
    return event_choices(current)

@bot.tree.command(name="76event", description="Announce a Fallout 76 event on your server. / Jelents be egy futó eseményt.")
@app_commands.describe(name="The name of the event. / Az esemény neve.")
@app_commands.autocomplete(name=event_autocomplete)
@app_commands.guild_only()
async def event_slash(interaction: discord.Interaction, name: str):
    await bot.ensure_bootstrap()
    key = lookup_event(name)
    if not key:
        await interaction.response.send_message("I don't know that event. Pick one from the suggestions.", ephemeral=True)
        return
    ok, text = await prepare_event_ping(interaction.guild, interaction.user, key)
    if not ok:
        await interaction.response.send_message(text, ephemeral=True)
        return
    await interaction.response.send_message(text, allowed_mentions=PING_MENTIONS)
    print(f"[Event] Sent notification for {EVENTS_CONFIG[key]} triggered by {interaction.user}")

# ---------- Keep-alive ----------
@tasks.loop(minutes=KEEP_ALIVE_MINUTES)
async def keep_alive_ping():
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(RENDER_EXTERNAL_URL, timeout=aiohttp.ClientTimeout(total=30)) as resp:
                if not (200 <= resp.status < 300):
                    print(f"[KeepAlive] Ping to {RENDER_EXTERNAL_URL} failed. Status code: {resp.status}")
    except Exception as e:
        print(f"[KeepAlive] Error pinging {RENDER_EXTERNAL_URL}: {e}")

@keep_alive_ping.before_loop
async def before_keep_alive():
    await bot.wait_until_ready()

def exit_code() -> int:
    return 1 if (bot.startup_failed or not bot.db_pool) else 0

# ---------- Run ----------
if __name__ == "__main__":
    if not DISCORD_TOKEN:
        print("FATAL ERROR: DISCORD_TOKEN environment variable not found.")
        sys.exit(1)
    if not DATABASE_URL:
        print("FATAL ERROR: DATABASE_URL environment variable not found.")
        sys.exit(1)

    bot.run(DISCORD_TOKEN)
    # Non-zero so the host restarts us after a failed startup
    sys.exit(exit_code())
