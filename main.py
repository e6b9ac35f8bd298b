import asyncio
import atexit
import html
import logging
import os
import re
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from aiogram import Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramNetworkError, TelegramUnauthorizedError
from aiogram.filters import CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import (
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    KeyboardButton,
    Message,
    ReplyKeyboardMarkup,
    Update,
)
from aiogram.utils.keyboard import ReplyKeyboardBuilder

# Load .env from project root before any config-dependent imports
_PROJECT_ROOT = Path(__file__).resolve().parent
_ENV_PATH = _PROJECT_ROOT / ".env"
if _ENV_PATH.exists():
    load_dotenv(_ENV_PATH, override=False)

import config

logging.basicConfig(level=config.log_level())
logger = logging.getLogger(__name__)
logger.info(".env loaded from: %s", _ENV_PATH.resolve())

import db
import identity
import lifecycle
import vault
from changefeed import BookChange, book_feed
from errors import AccessDenied, BackendUnavailable, ConstraintViolation, IllegalTransition, PreconditionFailed, VaultError
from filters import PROVIDER, PrivateChat, Registered

LOCK_FILE = config.BASE_DIR / "bot.lock"
PAGE_SIZE = config.BOOKS_PAGE_SIZE

# Browse UI state per Telegram user: {"page": int, "q": str | None}
_browse_state: dict[int, dict] = {}

# Cached browse results per Telegram user. Cleared on every book change event.
_browse_cache: dict[int, list[dict]] = {}

_PRIVATE = PrivateChat()
_REGISTERED = Registered()

BTN_BROWSE = "📚 Browse"
BTN_ADD = "➕ Add book"
BTN_MY_BOOKS = "📕 My books"
BTN_TRANSACTIONS = "🔄 Transactions"
BTN_PROFILE = "👤 Profile"

_STATUS_LABELS = {
    lifecycle.BOOK_AVAILABLE: "🟢 available",
    lifecycle.BOOK_BORROWED: "🔴 borrowed",
    lifecycle.BOOK_RESERVED: "🟡 reserved",
    lifecycle.PENDING: "⏳ pending",
    lifecycle.APPROVED: "✅ approved",
    lifecycle.REJECTED: "❌ rejected",
    lifecycle.COMPLETED: "📦 completed",
}


def _error_text(e: VaultError) -> str:
    """Short user-facing reply for a vault error."""
    if isinstance(e, AccessDenied):
        return "Not allowed."
    if isinstance(e, BackendUnavailable):
        return "⏳ Busy right now. Please try again."
    if isinstance(e, PreconditionFailed):
        if e.code == "own_book":
            return "That is your own book."
        return "❌ This book is not available any more."
    if isinstance(e, IllegalTransition):
        return "This request has already been handled."
    if isinstance(e, ConstraintViolation):
        return f"❌ {e.message}"
    return "Something went wrong."


def _fmt_date(value: Optional[str]) -> str:
    return (value or "")[:10] or "—"


def _on_book_change(event: BookChange) -> None:
    """Book set changed somewhere: drop cached views so the next render re-queries."""
    logger.debug("Book change %s %s; invalidating %d cached views", event.op, event.book_id, len(_browse_cache))
    _browse_cache.clear()


# ====== Process lock ======
def is_pid_running(pid: int) -> bool:
    try:
        os.kill(int(pid), 0)
        return True
    except (OSError, ValueError):
        return False


def create_lock() -> None:
    if LOCK_FILE.exists():
        try:
            data = LOCK_FILE.read_text(encoding="utf-8").strip()
            existing_pid = int(data.split()[0]) if data else None
        except (OSError, ValueError):
            existing_pid = None
        if existing_pid and existing_pid != os.getpid() and is_pid_running(existing_pid):
            logger.error("Another bot instance appears to be running (pid=%s). Exiting.", existing_pid)
            sys.exit(1)
        LOCK_FILE.unlink(missing_ok=True)
    LOCK_FILE.write_text(f"{os.getpid()} {datetime.now().isoformat()}", encoding="utf-8")


def remove_lock() -> None:
    try:
        LOCK_FILE.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove lock file: %s", e)


def _sigterm_handler(signum, frame):
    remove_lock()
    sys.exit(0)


# ====== FSM States ======
class RegisterStates(StatesGroup):
    name = State()
    email = State()


class AddBookStates(StatesGroup):
    title = State()
    author = State()
    genre = State()
    isbn = State()
    tags = State()


class SearchStates(StatesGroup):
    query = State()


class ProfileStates(StatesGroup):
    value = State()


# ====== Keyboards ======
def main_menu_keyboard() -> ReplyKeyboardMarkup:
    b = ReplyKeyboardBuilder()
    b.row(KeyboardButton(text=BTN_BROWSE), KeyboardButton(text=BTN_ADD))
    b.row(KeyboardButton(text=BTN_MY_BOOKS), KeyboardButton(text=BTN_TRANSACTIONS))
    b.row(KeyboardButton(text=BTN_PROFILE))
    return b.as_markup(resize_keyboard=True)


def _skip_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="⏭ Skip", callback_data="add_skip")],
        [InlineKeyboardButton(text="✖️ Cancel", callback_data="add_cancel")],
    ])


def books_list_keyboard(books: list, page: int, total_pages: int) -> InlineKeyboardMarkup:
    rows = []
    for b in books:
        mark = "🟢" if b.get("status") == lifecycle.BOOK_AVAILABLE else "🔴"
        title = (b.get("title") or "Untitled")[:50]
        rows.append([InlineKeyboardButton(text=f"{mark} {title}", callback_data=f"book_{b['book_id']}")])
    nav = []
    if page > 1:
        nav.append(InlineKeyboardButton(text="◀️", callback_data=f"books_p_{page - 1}"))
    nav.append(InlineKeyboardButton(text=f"{page}/{total_pages}", callback_data="noop"))
    if page < total_pages:
        nav.append(InlineKeyboardButton(text="▶️", callback_data=f"books_p_{page + 1}"))
    rows.append(nav)
    rows.append([
        InlineKeyboardButton(text="🔎 Search", callback_data="books_search"),
        InlineKeyboardButton(text="♻️ Clear search", callback_data="books_clear"),
    ])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def book_detail_keyboard(book: dict, actor_id: str) -> InlineKeyboardMarkup:
    book_id = book["book_id"]
    rows = []
    if book.get("status") == lifecycle.BOOK_AVAILABLE and book.get("owner_id") != actor_id:
        rows.append([InlineKeyboardButton(text="📥 Request to borrow", callback_data=f"borrow_{book_id}")])
    rows.append([InlineKeyboardButton(text=str(n) + "⭐", callback_data=f"rate_{book_id}_{n}") for n in range(1, 6)])
    rows.append([InlineKeyboardButton(text="💬 Reviews", callback_data=f"reviews_{book_id}")])
    rows.append([InlineKeyboardButton(text="⬅️ Back", callback_data="books_back")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def my_books_keyboard(books: list) -> InlineKeyboardMarkup:
    rows = []
    for b in books:
        title = (b.get("title") or "Untitled")[:40]
        rows.append([InlineKeyboardButton(text=f"🗑 {title}", callback_data=f"del_{b['book_id']}")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def transactions_keyboard(transactions: list, actor_id: str) -> InlineKeyboardMarkup:
    rows = []
    for t in transactions:
        if t.get("book_owner_id") != actor_id:
            continue
        tx_id = t["transaction_id"]
        title = (t.get("book_title") or "?")[:24]
        if t.get("status") == lifecycle.PENDING:
            rows.append([
                InlineKeyboardButton(text=f"✅ {title}", callback_data=f"tx_ok_{tx_id}"),
                InlineKeyboardButton(text="❌ Reject", callback_data=f"tx_no_{tx_id}"),
            ])
        elif t.get("status") == lifecycle.APPROVED:
            rows.append([InlineKeyboardButton(text=f"📥 Returned: {title}", callback_data=f"tx_ret_{tx_id}")])
    rows.append([InlineKeyboardButton(text="🔄 Refresh", callback_data="tx_refresh")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def profile_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="✏️ Name", callback_data="prof_name"),
            InlineKeyboardButton(text="✏️ Address", callback_data="prof_address"),
            InlineKeyboardButton(text="✏️ Contact", callback_data="prof_contact"),
        ],
    ])


# ====== Notifications ======
async def _notify(bot: Bot, profile_id: str, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None) -> None:
    """Message a profile's Telegram chat if it has one. Failures are logged, not raised."""
    subject = identity.find_subject(profile_id, PROVIDER)
    if not subject:
        return
    try:
        await bot.send_message(int(subject), text, reply_markup=reply_markup)
    except Exception as e:
        logger.warning("Notify failed profile_id=%s: %s", profile_id, e)


# ====== Registration ======
async def cmd_start(message: Message, state: FSMContext):
    await state.clear()
    uid = message.from_user.id if message.from_user else 0
    if identity.find_identity(PROVIDER, str(uid)):
        await message.answer("Welcome back to VedaVault 📚", reply_markup=main_menu_keyboard())
        return
    await state.set_state(RegisterStates.name)
    await message.answer(
        "Welcome to VedaVault, a neighbourhood book lending library.\n\nWhat should we call you?"
    )


async def register_name(message: Message, state: FSMContext):
    name = (message.text or "").strip()
    await state.update_data(name=name)
    await state.set_state(RegisterStates.email)
    await message.answer("Your email address?")


async def register_email(message: Message, state: FSMContext):
    data = await state.get_data()
    uid = message.from_user.id if message.from_user else 0
    metadata = {"name": data.get("name") or ""}
    if message.from_user and message.from_user.username:
        metadata["username"] = message.from_user.username
    try:
        profile = identity.register_identity(
            message.text or "",
            provider=PROVIDER,
            subject=str(uid),
            metadata=metadata,
        )
    except ConstraintViolation as e:
        await message.answer(f"❌ {e.message}\nPlease send another email address.")
        return
    except VaultError as e:
        await message.answer(_error_text(e))
        return
    await state.clear()
    await message.answer(
        f"✅ Registered as <b>{html.escape(profile['name'])}</b>.",
        reply_markup=main_menu_keyboard(),
        parse_mode=ParseMode.HTML,
    )


# ====== Browse ======
def _get_browse_state(user_id: int) -> dict:
    st = _browse_state.get(user_id)
    if not st:
        st = {"page": 1, "q": None}
        _browse_state[user_id] = st
    return st


def _browse_page(user_id: int, actor_id: str, page: int) -> tuple[str, InlineKeyboardMarkup]:
    st = _get_browse_state(user_id)
    # Without the book feed nothing invalidates the cache, so always re-query.
    books = _browse_cache.get(user_id) if config.REALTIME_ENABLED else None
    if books is None:
        books = vault.list_books(actor_id, q=st.get("q"))
        _browse_cache[user_id] = books
    total_pages = max(1, (len(books) + PAGE_SIZE - 1) // PAGE_SIZE)
    st["page"] = min(max(1, int(page)), total_pages)
    start = (st["page"] - 1) * PAGE_SIZE
    chunk = books[start:start + PAGE_SIZE]
    q = st.get("q")
    header = f"📚 Books ({len(books)})"
    if q:
        header += f" matching “{html.escape(q)}”"
    if not books:
        header += "\n\nNothing here yet."
    return header, books_list_keyboard(chunk, st["page"], total_pages)


async def show_browse(message: Message, actor_id: str):
    uid = message.from_user.id if message.from_user else 0
    _browse_cache.pop(uid, None)
    text, kb = _browse_page(uid, actor_id, 1)
    await message.answer(text, reply_markup=kb, parse_mode=ParseMode.HTML)


async def cb_books_page(callback: CallbackQuery, actor_id: str):
    try:
        page = int((callback.data or "").replace("books_p_", ""))
    except ValueError:
        page = 1
    text, kb = _browse_page(callback.from_user.id, actor_id, page)
    await callback.message.edit_text(text, reply_markup=kb, parse_mode=ParseMode.HTML)
    await callback.answer()


async def cb_books_back(callback: CallbackQuery, actor_id: str):
    st = _get_browse_state(callback.from_user.id)
    text, kb = _browse_page(callback.from_user.id, actor_id, st.get("page", 1))
    await callback.message.answer(text, reply_markup=kb, parse_mode=ParseMode.HTML)
    await callback.answer()


async def cb_books_search(callback: CallbackQuery, state: FSMContext, actor_id: str):
    await state.set_state(SearchStates.query)
    await callback.message.answer("🔎 Title, author, genre or tag:")
    await callback.answer()


async def cb_books_clear(callback: CallbackQuery, actor_id: str):
    uid = callback.from_user.id
    _get_browse_state(uid)["q"] = None
    _browse_cache.pop(uid, None)
    text, kb = _browse_page(uid, actor_id, 1)
    await callback.message.edit_text(text, reply_markup=kb, parse_mode=ParseMode.HTML)
    await callback.answer()


async def search_query_handler(message: Message, state: FSMContext, actor_id: str):
    await state.clear()
    uid = message.from_user.id if message.from_user else 0
    _get_browse_state(uid)["q"] = (message.text or "").strip() or None
    _browse_cache.pop(uid, None)
    text, kb = _browse_page(uid, actor_id, 1)
    await message.answer(text, reply_markup=kb, parse_mode=ParseMode.HTML)


def _book_detail_text(book: dict, summary: dict) -> str:
    lines = [
        f"📘 <b>{html.escape(book.get('title') or '?')}</b>",
        f"Author: {html.escape(book.get('author') or '—')}",
    ]
    if book.get("genre"):
        lines.append(f"Genre: {html.escape(book['genre'])}")
    if book.get("isbn"):
        lines.append(f"ISBN: {html.escape(book['isbn'])}")
    if book.get("tags"):
        lines.append("Tags: " + ", ".join(html.escape(t) for t in book["tags"]))
    lines.append(f"Status: {_STATUS_LABELS.get(book.get('status'), book.get('status'))}")
    lines.append(f"Owner: {html.escape(book.get('owner_name') or '—')}")
    if book.get("borrower_name"):
        lines.append(f"Borrowed by: {html.escape(book['borrower_name'])}")
    if summary.get("count"):
        lines.append(f"Rating: {summary['average']} ⭐ ({summary['count']})")
    return "\n".join(lines)


async def cb_book_detail(callback: CallbackQuery, actor_id: str):
    book_id = (callback.data or "").replace("book_", "", 1)
    book = vault.get_book(actor_id, book_id)
    if not book:
        await callback.answer("Book not found.", show_alert=True)
        return
    summary = vault.rating_summary(actor_id, book_id)
    await callback.message.answer(
        _book_detail_text(book, summary),
        reply_markup=book_detail_keyboard(book, actor_id),
        parse_mode=ParseMode.HTML,
    )
    await callback.answer()


async def cb_borrow(callback: CallbackQuery, actor_id: str):
    book_id = (callback.data or "").replace("borrow_", "", 1)
    try:
        tx = vault.request_borrow(actor_id, book_id)
    except VaultError as e:
        await callback.answer(_error_text(e), show_alert=True)
        return
    borrower = vault.get_profile(actor_id, actor_id) or {}
    kb = InlineKeyboardMarkup(inline_keyboard=[[
        InlineKeyboardButton(text="✅ Approve", callback_data=f"tx_ok_{tx['transaction_id']}"),
        InlineKeyboardButton(text="❌ Reject", callback_data=f"tx_no_{tx['transaction_id']}"),
    ]])
    await _notify(
        callback.bot,
        tx["book_owner_id"],
        f"📚 New borrow request\n\n📖 {tx['book_title']} ({tx['book_author']})\n👤 {borrower.get('name', '?')}",
        reply_markup=kb,
    )
    await callback.answer("✅ Request sent to the owner.", show_alert=True)


async def cb_reviews(callback: CallbackQuery, actor_id: str):
    book_id = (callback.data or "").replace("reviews_", "", 1)
    reviews = vault.list_reviews(actor_id, book_id)
    if not reviews:
        await callback.answer("No reviews yet.", show_alert=True)
        return
    lines = ["💬 <b>Reviews</b>\n"]
    for r in reviews[:10]:
        comment = f" — {html.escape(r['comment'])}" if r.get("comment") else ""
        lines.append(f"{'⭐' * int(r['rating'])} {html.escape(r.get('user_name') or '?')}{comment}")
    await callback.message.answer("\n".join(lines), parse_mode=ParseMode.HTML)
    await callback.answer()


async def cb_rate(callback: CallbackQuery, actor_id: str):
    try:
        _, book_id, rating = (callback.data or "").split("_", 2)
    except ValueError:
        await callback.answer("Error.")
        return
    try:
        vault.add_review(actor_id, book_id, rating)
    except VaultError as e:
        await callback.answer(_error_text(e), show_alert=True)
        return
    await callback.answer("Thanks for rating!")


# ====== Add book ======
async def add_book_start(message: Message, state: FSMContext, actor_id: str):
    await state.clear()
    await state.set_state(AddBookStates.title)
    await message.answer("📘 Title of the book?")


async def add_book_title(message: Message, state: FSMContext, actor_id: str):
    await state.update_data(title=(message.text or "").strip())
    await state.set_state(AddBookStates.author)
    await message.answer("✍️ Author?")


async def add_book_author(message: Message, state: FSMContext, actor_id: str):
    await state.update_data(author=(message.text or "").strip())
    await state.set_state(AddBookStates.genre)
    await message.answer("🏷 Genre?", reply_markup=_skip_keyboard())


async def add_book_genre(message: Message, state: FSMContext, actor_id: str):
    await state.update_data(genre=(message.text or "").strip())
    await state.set_state(AddBookStates.isbn)
    await message.answer("🔢 ISBN?", reply_markup=_skip_keyboard())


async def add_book_isbn(message: Message, state: FSMContext, actor_id: str):
    await state.update_data(isbn=(message.text or "").strip())
    await state.set_state(AddBookStates.tags)
    await message.answer("🔖 Tags, comma separated?", reply_markup=_skip_keyboard())


async def add_book_tags(message: Message, state: FSMContext, actor_id: str):
    await state.update_data(tags=message.text or "")
    await _add_book_save(message, state, actor_id)


async def add_book_skip(callback: CallbackQuery, state: FSMContext, actor_id: str):
    current = await state.get_state()
    if current == AddBookStates.genre.state:
        await state.set_state(AddBookStates.isbn)
        await callback.message.answer("🔢 ISBN?", reply_markup=_skip_keyboard())
    elif current == AddBookStates.isbn.state:
        await state.set_state(AddBookStates.tags)
        await callback.message.answer("🔖 Tags, comma separated?", reply_markup=_skip_keyboard())
    elif current == AddBookStates.tags.state:
        await _add_book_save(callback.message, state, actor_id)
    await callback.answer()


async def add_book_cancel(callback: CallbackQuery, state: FSMContext, actor_id: str):
    await state.clear()
    await callback.message.answer("Cancelled.", reply_markup=main_menu_keyboard())
    await callback.answer()


async def _add_book_save(target: Message, state: FSMContext, actor_id: str) -> None:
    data = await state.get_data()
    await state.clear()
    try:
        book = vault.create_book(
            actor_id,
            data.get("title"),
            data.get("author"),
            genre=data.get("genre"),
            isbn=data.get("isbn"),
            tags=data.get("tags"),
        )
    except VaultError as e:
        await target.answer(_error_text(e), reply_markup=main_menu_keyboard())
        return
    await target.answer(
        f"✅ <b>{html.escape(book['title'])}</b> is now listed.",
        reply_markup=main_menu_keyboard(),
        parse_mode=ParseMode.HTML,
    )


# ====== My books ======
def _my_books_text(books: list) -> str:
    if not books:
        return "You haven't listed any books yet."
    lines = ["📕 <b>Your books</b> (tap to delete)\n"]
    for b in books:
        status = _STATUS_LABELS.get(b.get("status"), b.get("status"))
        borrower = f" → {html.escape(b['borrower_name'])}" if b.get("borrower_name") else ""
        lines.append(f"• {html.escape(b['title'])} — {status}{borrower}")
    return "\n".join(lines)


async def show_my_books(message: Message, actor_id: str):
    books = vault.list_own_books(actor_id)
    await message.answer(_my_books_text(books), reply_markup=my_books_keyboard(books), parse_mode=ParseMode.HTML)


async def cb_delete_book(callback: CallbackQuery, actor_id: str):
    book_id = (callback.data or "").replace("del_", "", 1)
    book = vault.get_book(actor_id, book_id)
    if not book or book.get("owner_id") != actor_id:
        await callback.answer("Book not found.", show_alert=True)
        return
    kb = InlineKeyboardMarkup(inline_keyboard=[[
        InlineKeyboardButton(text="🗑 Yes, delete", callback_data=f"delok_{book_id}"),
        InlineKeyboardButton(text="✖️ Keep", callback_data=f"delno_{book_id}"),
    ]])
    await callback.message.answer(
        f"Delete <b>{html.escape(book['title'])}</b>? Its lending history goes too.",
        reply_markup=kb,
        parse_mode=ParseMode.HTML,
    )
    await callback.answer()


async def cb_delete_confirm(callback: CallbackQuery, actor_id: str):
    book_id = (callback.data or "").replace("delok_", "", 1)
    try:
        vault.delete_book(actor_id, book_id)
    except VaultError as e:
        await callback.answer(_error_text(e), show_alert=True)
        return
    books = vault.list_own_books(actor_id)
    await callback.message.edit_text(_my_books_text(books), reply_markup=my_books_keyboard(books), parse_mode=ParseMode.HTML)
    await callback.answer("Deleted.")


async def cb_delete_cancel(callback: CallbackQuery, actor_id: str):
    await callback.message.delete()
    await callback.answer("Kept.")


# ====== Transactions ======
def _transactions_text(transactions: list, actor_id: str) -> str:
    if not transactions:
        return "No transactions yet."
    now = datetime.now(timezone.utc)
    lines = ["🔄 <b>Transactions</b>\n"]
    for t in transactions:
        status = _STATUS_LABELS.get(t.get("status"), t.get("status"))
        who = "You are borrowing" if t.get("borrower_id") == actor_id else f"Borrower: {html.escape(t.get('borrower_name') or '?')}"
        lines.append(f"📖 <b>{html.escape(t.get('book_title') or '?')}</b> — {status}")
        lines.append(f"  {who}")
        if t.get("lend_date"):
            lines.append(f"  Lent: {_fmt_date(t['lend_date'])}  Due: {_fmt_date(t.get('due_date'))}")
        if t.get("return_date"):
            lines.append(f"  Returned: {_fmt_date(t['return_date'])}")
        if lifecycle.is_overdue(t, now):
            lines.append("  ⏰ Overdue")
        if t.get("pickup_token") and t.get("borrower_id") == actor_id and t.get("status") == lifecycle.APPROVED:
            lines.append(f"  Pickup code: <code>{html.escape(t['pickup_token'])}</code>")
        lines.append("")
    return "\n".join(lines)


async def show_transactions(message: Message, actor_id: str):
    transactions = vault.list_transactions(actor_id)
    await message.answer(
        _transactions_text(transactions, actor_id),
        reply_markup=transactions_keyboard(transactions, actor_id),
        parse_mode=ParseMode.HTML,
    )


async def _refresh_transactions(callback: CallbackQuery, actor_id: str) -> None:
    transactions = vault.list_transactions(actor_id)
    await callback.message.edit_text(
        _transactions_text(transactions, actor_id),
        reply_markup=transactions_keyboard(transactions, actor_id),
        parse_mode=ParseMode.HTML,
    )


_TX_ACTIONS = {
    "tx_ok_": (lifecycle.APPROVED, "✅ Approved.", "✅ Your request for “{title}” was approved. Due back {due}."),
    "tx_no_": (lifecycle.REJECTED, "Rejected.", "❌ Your request for “{title}” was declined."),
    "tx_ret_": (lifecycle.COMPLETED, "📥 Marked as returned.", "📦 “{title}” is marked as returned. Thanks!"),
}


async def cb_transaction_action(callback: CallbackQuery, actor_id: str):
    data = callback.data or ""
    prefix = next((p for p in _TX_ACTIONS if data.startswith(p)), None)
    if prefix is None:
        await callback.answer()
        return
    status, ok_text, borrower_text = _TX_ACTIONS[prefix]
    tx_id = data[len(prefix):]
    try:
        tx = vault.set_transaction_status(actor_id, tx_id, status)
    except VaultError as e:
        logger.info("Transition refused: tx=%s to=%s actor=%s code=%s", tx_id, status, actor_id, e.code)
        await callback.answer(_error_text(e), show_alert=True)
        return
    await _notify(
        callback.bot,
        tx["borrower_id"],
        borrower_text.format(title=tx.get("book_title") or "?", due=_fmt_date(tx.get("due_date"))),
    )
    await callback.answer(ok_text)
    await _refresh_transactions(callback, actor_id)


async def cb_transactions_refresh(callback: CallbackQuery, actor_id: str):
    await _refresh_transactions(callback, actor_id)
    await callback.answer()


# ====== Profile ======
def _profile_text(profile: dict) -> str:
    return (
        "👤 <b>Profile</b>\n\n"
        f"Name: {html.escape(profile.get('name') or '—')}\n"
        f"Email: {html.escape(profile.get('email') or '—')}\n"
        f"Address: {html.escape(profile.get('address') or '—')}\n"
        f"Contact: {html.escape(profile.get('contact') or '—')}"
    )


async def show_profile(message: Message, actor_id: str):
    profile = vault.get_profile(actor_id, actor_id)
    await message.answer(_profile_text(profile), reply_markup=profile_keyboard(), parse_mode=ParseMode.HTML)


async def cb_profile_edit(callback: CallbackQuery, state: FSMContext, actor_id: str):
    field = (callback.data or "").replace("prof_", "", 1)
    if field not in vault.PROFILE_EDITABLE_FIELDS:
        await callback.answer()
        return
    await state.set_state(ProfileStates.value)
    await state.update_data(field=field)
    await callback.message.answer(f"New {field}:")
    await callback.answer()


async def profile_save(message: Message, state: FSMContext, actor_id: str):
    data = await state.get_data()
    await state.clear()
    try:
        profile = vault.update_profile(actor_id, actor_id, **{data.get("field", "name"): message.text or ""})
    except VaultError as e:
        await message.answer(_error_text(e), reply_markup=main_menu_keyboard())
        return
    await message.answer(_profile_text(profile), reply_markup=main_menu_keyboard(), parse_mode=ParseMode.HTML)


# ====== Fallbacks & errors ======
async def cb_noop(callback: CallbackQuery):
    await callback.answer()


async def fallback_private(message: Message):
    await message.answer("Sorry, I didn't get that. Pick from the menu or press /start.", reply_markup=main_menu_keyboard())


async def _log_incoming_update(handler, event: Update, data: dict):
    ev_type = getattr(event, "event_type", "unknown")
    extra = ""
    if ev_type == "message" and event.message:
        msg = event.message
        uid = msg.from_user.id if msg.from_user else "?"
        extra = f" from_user_id={uid} text={(msg.text or '(no text)')[:200]!r}"
    elif ev_type == "callback_query" and event.callback_query:
        cq = event.callback_query
        uid = cq.from_user.id if cq.from_user else "?"
        extra = f" from_user_id={uid} data={(cq.data or '(no data)')[:80]!r}"
    logger.info("INCOMING %s%s", ev_type, extra)
    return await handler(event, data)


async def _global_error_handler(event) -> bool:
    """Last-resort error handler: log and reply safely."""
    exc = getattr(event, "exception", None)
    logger.error("Unhandled exception", exc_info=exc)
    update = getattr(event, "update", None)
    msg = getattr(update, "message", None) if update else None
    cq = getattr(update, "callback_query", None) if update else None
    text = _error_text(exc) if isinstance(exc, VaultError) else "Something went wrong. Press /start."
    try:
        if msg:
            await msg.answer(text, reply_markup=main_menu_keyboard())
        elif cq:
            await cq.answer(text, show_alert=True)
    except Exception:
        # Never let the error handler crash polling.
        logger.exception("Error handler reply failed")
    return True


def setup_router(dp: Dispatcher) -> None:
    dp.errors.register(_global_error_handler)

    dp.message.register(cmd_start, CommandStart(), _PRIVATE)
    dp.message.register(register_name, RegisterStates.name, _PRIVATE, F.text)
    dp.message.register(register_email, RegisterStates.email, _PRIVATE, F.text)

    # Main menu buttons
    dp.message.register(show_browse, F.text == BTN_BROWSE, _PRIVATE, _REGISTERED)
    dp.message.register(add_book_start, F.text == BTN_ADD, _PRIVATE, _REGISTERED)
    dp.message.register(show_my_books, F.text == BTN_MY_BOOKS, _PRIVATE, _REGISTERED)
    dp.message.register(show_transactions, F.text == BTN_TRANSACTIONS, _PRIVATE, _REGISTERED)
    dp.message.register(show_profile, F.text == BTN_PROFILE, _PRIVATE, _REGISTERED)

    # FSM text input
    dp.message.register(search_query_handler, SearchStates.query, _PRIVATE, _REGISTERED)
    dp.message.register(add_book_title, AddBookStates.title, _PRIVATE, _REGISTERED, F.text)
    dp.message.register(add_book_author, AddBookStates.author, _PRIVATE, _REGISTERED, F.text)
    dp.message.register(add_book_genre, AddBookStates.genre, _PRIVATE, _REGISTERED, F.text)
    dp.message.register(add_book_isbn, AddBookStates.isbn, _PRIVATE, _REGISTERED, F.text)
    dp.message.register(add_book_tags, AddBookStates.tags, _PRIVATE, _REGISTERED, F.text)
    dp.message.register(profile_save, ProfileStates.value, _PRIVATE, _REGISTERED, F.text)

    # Callbacks
    dp.callback_query.register(add_book_skip, F.data == "add_skip", _REGISTERED)
    dp.callback_query.register(add_book_cancel, F.data == "add_cancel", _REGISTERED)
    dp.callback_query.register(cb_books_page, F.data.startswith("books_p_"), _REGISTERED)
    dp.callback_query.register(cb_books_search, F.data == "books_search", _REGISTERED)
    dp.callback_query.register(cb_books_clear, F.data == "books_clear", _REGISTERED)
    dp.callback_query.register(cb_books_back, F.data == "books_back", _REGISTERED)
    dp.callback_query.register(cb_book_detail, F.data.startswith("book_"), _REGISTERED)
    dp.callback_query.register(cb_borrow, F.data.startswith("borrow_"), _REGISTERED)
    dp.callback_query.register(cb_reviews, F.data.startswith("reviews_"), _REGISTERED)
    dp.callback_query.register(cb_rate, F.data.startswith("rate_"), _REGISTERED)
    dp.callback_query.register(cb_delete_confirm, F.data.startswith("delok_"), _REGISTERED)
    dp.callback_query.register(cb_delete_cancel, F.data.startswith("delno_"), _REGISTERED)
    dp.callback_query.register(cb_delete_book, F.data.startswith("del_"), _REGISTERED)
    dp.callback_query.register(cb_transaction_action, F.data.startswith("tx_ok_"), _REGISTERED)
    dp.callback_query.register(cb_transaction_action, F.data.startswith("tx_no_"), _REGISTERED)
    dp.callback_query.register(cb_transaction_action, F.data.startswith("tx_ret_"), _REGISTERED)
    dp.callback_query.register(cb_transactions_refresh, F.data == "tx_refresh", _REGISTERED)
    dp.callback_query.register(cb_profile_edit, F.data.startswith("prof_"), _REGISTERED)
    dp.callback_query.register(cb_noop, F.data == "noop")

    # Very last resort: never silent in private chat
    dp.message.register(fallback_private, _PRIVATE)


async def main():
    raw = os.getenv("BOT_TOKEN", "") or ""
    token = raw.strip().strip("'\"")
    if not token:
        raise RuntimeError("BOT_TOKEN is missing. Set it in environment variables.")
    if not re.match(r"^\d{6,12}:[A-Za-z0-9_-]{30,}$", token):
        raise RuntimeError("BOT_TOKEN format invalid. Expected digits:alphanumeric (get one from @BotFather).")

    create_lock()
    atexit.register(remove_lock)
    signal.signal(signal.SIGINT, _sigterm_handler)
    signal.signal(signal.SIGTERM, _sigterm_handler)
    logger.info("Starting bot process. db=%s", db.DB_PATH)

    db.init_db()
    if config.SEED_DEMO:
        db.seed_demo()
    if config.REALTIME_ENABLED:
        book_feed.subscribe(_on_book_change)
    logger.info("Realtime book refresh enabled: %s", config.REALTIME_ENABLED)

    bot = Bot(token=token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    try:
        me = await bot.get_me()
        logger.info("Bot ready: id=%s, username=@%s", me.id, me.username)
        await bot.delete_webhook(drop_pending_updates=True)
    except TelegramUnauthorizedError:
        logger.error("BOT_TOKEN invalid/revoked (Unauthorized). Put a new token into .env and restart.")
        await bot.session.close()
        raise SystemExit(1)
    except TelegramNetworkError as e:
        logger.error("Network error contacting Telegram API: %s", e)
        await bot.session.close()
        raise SystemExit(1)

    dp = Dispatcher()
    dp.update.outer_middleware(_log_incoming_update)
    setup_router(dp)

    try:
        await dp.start_polling(bot)
    finally:
        await bot.session.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except RuntimeError as e:
        logger.error("Startup failed: %s", e)
        sys.exit(1)
