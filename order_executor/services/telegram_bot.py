"""Telegram bot for order executor notifications and remote control."""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import (
    Application,
    CommandHandler,
    CallbackQueryHandler,
    ContextTypes,
)
from sqlmodel import Session, select

from order_executor.config import settings

logger = logging.getLogger(__name__)

_bot_instance: Optional["TelegramBot"] = None

RECENT_ORDERS = 10


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop."""

    def __init__(self, token: str, chat_ids: list[int]):
        self.token = token
        self.chat_ids = set(chat_ids)
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from order_executor.engine.scheduler import get_scheduler_status
        from order_executor.database import engine
        from order_executor.models.exchange_account import ExchangeAccount
        from order_executor.models.order import ORDER_STATUS_PENDING, Order

        status = get_scheduler_status()
        with Session(engine) as session:
            enabled = session.exec(
                select(ExchangeAccount).where(ExchangeAccount.run_on_server == True)  # noqa: E712
            ).all()
            pending = session.exec(select(Order).where(Order.status == ORDER_STATUS_PENDING)).all()

        scheduler_str = "running" if status["running"] else "stopped"
        text = (
            f"Scheduler: {scheduler_str}\n"
            f"Jobs: {status['job_count']}\n"
            f"Enabled accounts: {len(enabled)}\n"
            f"Pending orders: {len(pending)}"
        )
        await update.message.reply_text(text)

    async def _cmd_orders(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from order_executor.database import engine
        from order_executor.models.order import Order

        with Session(engine) as session:
            orders = session.exec(
                select(Order).order_by(Order.created_at.desc()).limit(RECENT_ORDERS)
            ).all()

        if not orders:
            await update.message.reply_text("No orders yet.")
            return

        lines = []
        for o in orders:
            stop = f" | SL {o.stop_loss_price}" if o.stop_loss_price else ""
            lines.append(
                f"#{o.id} {o.order_dir} {o.pos_side} {o.quantity} {o.symbol} | {o.status}{stop}"
            )
        await update.message.reply_text("\n".join(lines))

    async def _cmd_ticks(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Last tick outcome per enabled account."""
        if not await self._check_auth(update):
            return

        from order_executor.database import engine
        from order_executor.models.exchange_account import ExchangeAccount
        from order_executor.models.job_log import JobLog

        lines = []
        with Session(engine) as session:
            accounts = session.exec(
                select(ExchangeAccount).where(ExchangeAccount.run_on_server == True)  # noqa: E712
            ).all()
            for account in accounts:
                last = session.exec(
                    select(JobLog)
                    .where(JobLog.account_id == account.id)
                    .order_by(JobLog.timestamp.desc())
                    .limit(1)
                ).first()
                if last is None:
                    lines.append(f"{account.name}: no ticks yet")
                else:
                    lines.append(
                        f"{account.name}: {last.status} {last.action or '-'} "
                        f"at {last.timestamp:%H:%M:%S}"
                    )

        await update.message.reply_text("\n".join(lines) or "No enabled accounts.")

    async def _cmd_close_all(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        keyboard = InlineKeyboardMarkup([
            [
                InlineKeyboardButton("Yes, close all", callback_data="confirm_close_all"),
                InlineKeyboardButton("Cancel", callback_data="cancel"),
            ]
        ])
        await update.message.reply_text(
            "Close all positions (keep accounts enabled)?",
            reply_markup=keyboard,
        )

    async def _cmd_stop_all(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        keyboard = InlineKeyboardMarkup([
            [
                InlineKeyboardButton("Yes, stop everything", callback_data="confirm_stop_all"),
                InlineKeyboardButton("Cancel", callback_data="cancel"),
            ]
        ])
        await update.message.reply_text(
            "Close all positions AND disable all accounts?",
            reply_markup=keyboard,
        )

    async def _cmd_start_all(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from order_executor.database import engine
        from order_executor.models.exchange_account import ExchangeAccount
        from order_executor.engine.scheduler import add_account_job

        with Session(engine) as session:
            accounts = session.exec(
                select(ExchangeAccount).where(ExchangeAccount.run_on_server == False)  # noqa: E712
            ).all()
            count = 0
            for account in accounts:
                account.run_on_server = True
                account.updated_at = datetime.now(timezone.utc)
                session.add(account)
                add_account_job(account.id, account.schedule_seconds)
                count += 1
            session.commit()

        await update.message.reply_text(f"Re-enabled {count} accounts.")

    async def _handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if not query or not query.from_user or not self._is_authorized(query.from_user.id):
            return

        await query.answer()

        if query.data == "cancel":
            await query.edit_message_text("Cancelled.")
            return

        from order_executor.services.emergency_stop import run_emergency_stop

        if query.data == "confirm_close_all":
            await query.edit_message_text("Closing all positions...")
            result = await run_emergency_stop(close_positions=True, disable_accounts=False)
            errors = f"\nErrors: {len(result['errors'])}" if result["errors"] else ""
            await query.edit_message_text(
                f"Closed {result['positions_closed']} positions.{errors}"
            )

        elif query.data == "confirm_stop_all":
            await query.edit_message_text("Emergency stop in progress...")
            result = await run_emergency_stop(close_positions=True, disable_accounts=True)
            errors = f"\nErrors: {len(result['errors'])}" if result["errors"] else ""
            await query.edit_message_text(
                f"Closed {result['positions_closed']} positions, "
                f"disabled {result['accounts_disabled']} accounts.{errors}"
            )

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self._app or not self._app.bot:
            return
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message)
            except Exception as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    def _run_bot(self):
        """Run the bot in a background thread with its own event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("orders", self._cmd_orders))
        self._app.add_handler(CommandHandler("ticks", self._cmd_ticks))
        self._app.add_handler(CommandHandler("close_all", self._cmd_close_all))
        self._app.add_handler(CommandHandler("stop_all", self._cmd_stop_all))
        self._app.add_handler(CommandHandler("start_all", self._cmd_start_all))
        self._app.add_handler(CallbackQueryHandler(self._handle_callback))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)


def init_bot() -> TelegramBot:
    """Initialize and return the bot singleton."""
    global _bot_instance
    _bot_instance = TelegramBot(
        token=settings.telegram_bot_token,
        chat_ids=settings.telegram_chat_ids,
    )
    return _bot_instance


def get_bot() -> Optional[TelegramBot]:
    """Get the bot singleton, or None if not initialized."""
    return _bot_instance
