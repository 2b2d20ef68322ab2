"""
CLI 命令行界面
使用 Click + Rich 提供归档、同步、诊断与查询命令；--json 输出机器可读结果
"""

import asyncio
import json
import logging
import signal
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.markup import escape
from rich import box

from .config import load_config, validate_config, resolve_store_dir
from .errors import ArchiveError, AuthenticationError, NotFoundError, classify_error
from .search import SearchEngine, encode_cursor, query_terms
from .service import open_archive
from .store_lock import read_store_lock
from .utils import parse_duration


console = Console()

STATE_STYLES = {
    "pending": "yellow",
    "in_progress": "cyan",
    "idle": "green",
    "error": "red",
}


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Telethon 的连接日志过于频繁
    logging.getLogger("telethon").setLevel(logging.DEBUG if verbose else logging.WARNING)


def run_async(coro):
    """统一的异步运行入口"""
    return asyncio.run(coro)


def _write_json(payload):
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _fail(ctx, error: BaseException):
    if ctx.obj.get("json"):
        _write_json({"ok": False, "error": str(error), "type": type(error).__name__})
    else:
        console.print(f"[red]❌ {type(error).__name__}: {escape(str(error))}[/red]")
    raise SystemExit(1)


def _execute(ctx, coro):
    """运行命令协程，已知错误统一输出并以退出码 1 结束"""
    try:
        return run_async(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]⏹ 已中断[/yellow]")
        raise SystemExit(130)
    except (ArchiveError, ValueError, FileNotFoundError) as e:
        _fail(ctx, e)


def _require_config(ctx):
    errors = validate_config(ctx.obj["config"])
    if errors:
        if ctx.obj.get("json"):
            _write_json({"ok": False, "error": "; ".join(errors), "type": "ConfigError"})
        else:
            for e in errors:
                console.print(f"[red]❌ {e}[/red]")
        raise SystemExit(1)


def _short(value) -> str:
    return (value or "")[:16].replace("T", " ")


def _queue_line(stats: dict) -> str:
    return (
        f"pending={stats['pending']} in_progress={stats['in_progress']} "
        f"idle={stats['idle']} error={stats['error']}"
    )


def _stop_on_signals() -> asyncio.Event:
    """SIGINT / SIGTERM 只设置停止事件，由正常退出路径完成清理"""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows 不支持，退回 KeyboardInterrupt
            continue
    return stop_event


async def _require_login(service):
    try:
        authorized = await service.client.is_authorized()
    except ArchiveError:
        raise
    except Exception as e:
        raise classify_error(e) from e
    if not authorized:
        raise AuthenticationError("未登录 Telegram，请先运行 `tg-archive auth`")


async def _follow(service, stop_event: asyncio.Event):
    """持续运行直到收到停止信号；后台任务异常退出时抛出"""
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            pass
        service.raise_if_failed()


async def _resolve_channel_id(db, chat):
    if chat is None:
        return None
    channel = await db.channels.find_channel(chat)
    if channel is None:
        raise ValueError(f"本地存储中没有该会话: {chat}")
    return channel["id"]


def _print_messages(results, query=None):
    terms = query_terms(query)
    for msg in results:
        channel = msg.get("channel_title") or str(msg["channel_id"])
        if msg.get("topic_title"):
            channel = f"{channel} / {msg['topic_title']}"
        sender = msg.get("sender_display_name") or "?"
        text = escape(msg.get("display_text") or "")

        # 高亮关键词
        for term in terms:
            term = escape(term)
            text = text.replace(term, f"[bold yellow]{term}[/bold yellow]")

        console.print(
            f"[dim]{_short(msg['date'])}[/dim] [cyan][{escape(channel)}][/cyan] "
            f"[dim]#{msg['message_id']}[/dim] [green]{escape(sender)}[/green]: {text}"
        )


# ═══════════════════════════════════════════════════════
# CLI 主入口
# ═══════════════════════════════════════════════════════


@click.group()
@click.option("--store", "-s", default=None, help="存储目录 (默认 ~/.tg-archive)")
@click.option("--config", "-c", default=None, help="配置文件路径")
@click.option("--json", "as_json", is_flag=True, help="输出 JSON")
@click.option("--verbose", "-v", is_flag=True, help="详细日志")
@click.pass_context
def cli(ctx, store, config, as_json, verbose):
    """🗄 TG Archive — Telegram 消息归档、同步与检索"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["json"] = as_json
    try:
        cfg = load_config(config)
    except FileNotFoundError as e:
        _fail(ctx, e)
    ctx.obj["config"] = cfg
    ctx.obj["store"] = resolve_store_dir(cfg, store)


# ═══════════════════════════════════════════════════════
# auth — 登录 / 状态 / 登出
# ═══════════════════════════════════════════════════════


@cli.group(invoke_without_command=True)
@click.option("--follow", is_flag=True, help="登录后继续运行实时同步")
@click.pass_context
def auth(ctx, follow):
    """🔐 登录 Telegram 并初始化会话列表"""
    if ctx.invoked_subcommand is not None:
        return
    _require_config(ctx)
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store) as service:
            if not await service.client.login():
                raise AuthenticationError("Telegram 登录失败")
            dialogs = await service.refresh_channels_from_dialogs()
            if not follow:
                return {"authenticated": True, "dialogs": dialogs}

            await service.start_realtime_sync()
            await service.resume_pending_jobs()
            if not ctx.obj["json"]:
                console.print("[green]🚀 同步运行中，按 Ctrl+C 停止[/green]")
            await _follow(service, _stop_on_signals())
            return {"authenticated": True, "dialogs": dialogs, "stopped": True}

    result = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(result)
    else:
        console.print(f"[green]✅ 已登录，初始化 {result['dialogs']} 个会话[/green]")


@auth.command(name="status")
@click.pass_context
def auth_status(ctx):
    """查看登录状态"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store, lock=False) as service:
            try:
                authenticated = await service.client.is_authorized()
            except Exception as e:
                logging.getLogger("tg-archive.cli").debug(f"登录状态检查失败: {e}")
                authenticated = False
            search = await service.get_search_status()
        return {"authenticated": authenticated, "ftsEnabled": search["enabled"]}

    result = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(result)
    elif result["authenticated"]:
        console.print("[green]✅ 已登录[/green]")
    else:
        console.print("[yellow]⚠️ 未登录[/yellow]")


@auth.command(name="logout")
@click.pass_context
def auth_logout(ctx):
    """登出并作废当前会话"""
    _require_config(ctx)
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store) as service:
            return await service.client.logout()

    logged_out = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json({"loggedOut": bool(logged_out)})
    else:
        console.print("[green]👋 已登出[/green]" if logged_out else "[yellow]⚠️ 登出失败[/yellow]")


# ═══════════════════════════════════════════════════════
# sync — 回填 + 实时同步
# ═══════════════════════════════════════════════════════


@cli.command()
@click.option("--once/--follow", "once", default=False,
              help="--once: 队列清空并持续空闲后退出；--follow: 持续运行 (默认)")
@click.option("--idle-exit", default="30s", help="--once 模式下的空闲退出时长 (如 30s / 500ms / 2m)")
@click.pass_context
def sync(ctx, once, idle_exit):
    """🔄 执行回填任务并同步实时消息"""
    _require_config(ctx)
    cfg, store = ctx.obj["config"], ctx.obj["store"]
    try:
        idle_window = parse_duration(idle_exit)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--idle-exit")

    async def _run():
        async with open_archive(cfg, store) as service:
            await _require_login(service)
            await service.refresh_channels_from_dialogs()
            await service.resume_pending_jobs()
            stop_event = _stop_on_signals()

            if once:
                finished = await service.wait_for_idle(idle_window, stop_event)
                return {"ok": True, "mode": "once", "idle": finished,
                        "queue": await service.get_queue_stats()}

            await service.start_realtime_sync()
            if not ctx.obj["json"]:
                console.print("[green]🚀 同步运行中，按 Ctrl+C 停止[/green]")
            await _follow(service, stop_event)
            return {"ok": True, "mode": "follow", "queue": await service.get_queue_stats()}

    result = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(result)
    else:
        console.print(f"[green]✅ 同步结束[/green] [dim]{_queue_line(result['queue'])}[/dim]")


# ═══════════════════════════════════════════════════════
# doctor — 诊断
# ═══════════════════════════════════════════════════════


@cli.command()
@click.option("--connect", is_flag=True, help="同时测试实时更新订阅")
@click.pass_context
def doctor(ctx, connect):
    """🩺 检查存储锁、登录、全文索引与任务队列"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]
    lock = read_store_lock(store)

    async def _run():
        async with open_archive(cfg, store, lock=False) as service:
            authenticated = connected = False
            try:
                authenticated = await service.client.is_authorized()
                if connect and authenticated:
                    connected = await service.check_updates_connection()
            except Exception as e:
                logging.getLogger("tg-archive.cli").debug(f"连接检查失败: {e}")
            search = await service.get_search_status()
            queue = await service.get_queue_stats()
        return {
            "storeDir": str(store),
            "lockHeld": lock["exists"],
            "lockInfo": lock["info"],
            "authenticated": authenticated,
            "connected": connected,
            "ftsEnabled": search["enabled"],
            "ftsVersion": search["version"],
            "messages": search["messages"],
            "queue": queue,
        }

    result = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(result)
        return

    def flag(value: bool) -> str:
        return "[green]✔[/green]" if value else "[red]✘[/red]"

    table = Table(title="🩺 诊断", box=box.ROUNDED, show_header=False)
    table.add_column("项目", style="cyan")
    table.add_column("结果")
    table.add_row("存储目录", result["storeDir"])
    lock_info = f" {escape(json.dumps(result['lockInfo'], ensure_ascii=False))}" if result["lockInfo"] else ""
    table.add_row("存储锁", f"{'已锁定' if result['lockHeld'] else '未锁定'}{lock_info}")
    table.add_row("已登录", flag(result["authenticated"]))
    table.add_row("实时连接", flag(result["connected"]))
    fts = flag(result["ftsEnabled"])
    if result["ftsVersion"]:
        fts += f" (v{result['ftsVersion']})"
    table.add_row("全文索引", fts)
    table.add_row("消息数", str(result["messages"]))
    table.add_row("任务队列", _queue_line(result["queue"]))
    console.print(table)


# ═══════════════════════════════════════════════════════
# jobs — 回填任务管理
# ═══════════════════════════════════════════════════════


@cli.group(name="jobs")
def jobs_cmd():
    """📋 管理回填任务"""
    pass


@jobs_cmd.command(name="add")
@click.argument("chat")
@click.option("--min-date", default=None, help="回填到此时间为止 (ISO 格式)")
@click.pass_context
def jobs_add(ctx, chat, min_date):
    """新增回填任务 (CHAT: ID / @username / 标题)"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store) as service:
            return await service.add_job(chat, min_date)

    job = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(job)
    else:
        console.print(f"[green]➕ 任务 #{job['id']}[/green] {escape(job['chat_ref'])} → {job['state']}")


@jobs_cmd.command(name="list")
@click.option("--state", type=click.Choice(list(STATE_STYLES)), default=None, help="按状态过滤")
@click.pass_context
def jobs_list(ctx, state):
    """列出回填任务"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store, lock=False) as service:
            return await service.list_jobs(state)

    jobs = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(jobs)
        return
    if not jobs:
        console.print("[yellow]暂无回填任务[/yellow]")
        return

    table = Table(title="📋 回填任务", box=box.ROUNDED)
    table.add_column("ID", style="dim", justify="right")
    table.add_column("会话", style="cyan")
    table.add_column("状态")
    table.add_column("min_date", style="dim")
    table.add_column("锚点", justify="right")
    table.add_column("已写入", style="green", justify="right")
    table.add_column("最近错误", style="red", max_width=40)

    for job in jobs:
        style = STATE_STYLES.get(job["state"], "white")
        anchor = f"#{job['anchor_message_id']}" if job["anchor_message_id"] else "-"
        table.add_row(
            str(job["id"]),
            escape(job["chat_ref"]),
            f"[{style}]{job['state']}[/{style}]",
            _short(job["min_date"]) or "-",
            anchor,
            str(job["message_count"] or 0),
            escape(job["last_error"] or ""),
        )
    console.print(table)


@jobs_cmd.command(name="retry")
@click.argument("job_id", type=int)
@click.pass_context
def jobs_retry(ctx, job_id):
    """把 error 状态的任务重新排队"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store) as service:
            return await service.retry_job(job_id)

    job = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(job)
    else:
        console.print(f"[green]🔁 任务 #{job['id']} → {job['state']}[/green]")


@jobs_cmd.command(name="resume")
@click.argument("job_id", type=int)
@click.pass_context
def jobs_resume(ctx, job_id):
    """让 idle 任务继续向更早的历史回填"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store) as service:
            return await service.resume_job(job_id)

    job = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(job)
    else:
        console.print(f"[green]▶️ 任务 #{job['id']} → {job['state']}[/green]")


# ═══════════════════════════════════════════════════════
# search / get — 检索消息
# ═══════════════════════════════════════════════════════


@cli.command()
@click.argument("query", required=False)
@click.option("--chat", default=None, help="会话 ID / @username / 标题")
@click.option("--topic", "topic_id", default=None, type=int, help="话题 ID")
@click.option("--source", type=click.Choice(["archive", "live", "both"]), default="both")
@click.option("--media", "media_type", default=None, help="媒体类型 (photo / document / ... / any)")
@click.option("--since", default=None, help="起始时间 (ISO 格式)")
@click.option("--until", default=None, help="截止时间 (ISO 格式，不含)")
@click.option("--domain", default=None, help="包含该域名链接的消息")
@click.option("--limit", "-l", default=30, help="最多显示条数")
@click.option("--offset", default=0, help="跳过前 N 条")
@click.option("--cursor", default=None, help="上一页返回的分页游标")
@click.pass_context
def search(ctx, query, chat, topic_id, source, media_type, since, until, domain, limit, offset, cursor):
    """🔍 搜索归档消息 (不带 QUERY 时按条件列出)"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store, lock=False) as service:
            engine = SearchEngine(service.db)
            return await engine.search(
                query, chat=chat, topic_id=topic_id, source=source, media_type=media_type,
                since=since, until=until, domain=domain, limit=limit, offset=offset, cursor=cursor,
            )

    results = _execute(ctx, _run())
    next_cursor = encode_cursor(results[-1]) if results and len(results) == limit else None
    if ctx.obj["json"]:
        _write_json({"results": results, "next_cursor": next_cursor})
        return
    if not results:
        console.print("[yellow]未找到匹配的消息[/yellow]")
        return

    console.print(f"[green]找到 {len(results)} 条匹配消息[/green]\n")
    _print_messages(results, query)
    if next_cursor:
        console.print(f"\n[dim]下一页: --cursor {next_cursor}[/dim]")


@cli.command()
@click.argument("channel_id", type=int)
@click.argument("message_id", type=int)
@click.pass_context
def get(ctx, channel_id, message_id):
    """📄 查看单条消息"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store, lock=False) as service:
            return await SearchEngine(service.db).get(channel_id, message_id)

    msg = _execute(ctx, _run())
    if msg is None:
        _fail(ctx, NotFoundError(f"消息不存在: {channel_id}#{message_id}"))
    if ctx.obj["json"]:
        _write_json(msg)
        return

    lines = [escape(msg.get("text") or msg.get("display_text") or "")]
    if msg.get("media_type"):
        lines.append(f"\n[blue]📎 {msg['media_type']}[/blue] {escape(msg.get('media_filename') or '')}")
    for link in msg["links"]:
        lines.append(f"[blue]🔗 {escape(link['url'])}[/blue]")
    meta = f"{msg['source']} | 编辑于 {_short(msg['edit_date'])}" if msg.get("edit_date") else msg["source"]

    console.print(Panel(
        "\n".join(lines),
        title=(
            f"[bold]{escape(msg.get('channel_title') or str(channel_id))}[/bold] "
            f"#{message_id} | {escape(msg.get('sender_display_name') or '?')} | {_short(msg['date'])}"
        ),
        subtitle=f"[dim]{meta}[/dim]",
        border_style="dim",
        padding=(1, 2),
    ))


# ═══════════════════════════════════════════════════════
# links — 查看链接 / 域名
# ═══════════════════════════════════════════════════════


@cli.command()
@click.option("--chat", default=None, help="会话 ID / @username / 标题")
@click.option("--domain", default=None, help="按域名过滤 (含子域名)")
@click.option("--last", "-n", default=20, help="显示最近 N 条链接")
@click.option("--domains", "by_domain", is_flag=True, help="按域名汇总")
@click.pass_context
def links(ctx, chat, domain, last, by_domain):
    """🔗 查看归档中的链接"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store, lock=False) as service:
            if by_domain:
                return await service.db.links.get_domains(limit=last)
            channel_id = await _resolve_channel_id(service.db, chat)
            return await service.db.links.get_links(channel_id=channel_id, domain=domain, limit=last)

    results = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(results)
        return
    if not results:
        console.print("[yellow]暂无链接记录[/yellow]")
        return

    if by_domain:
        table = Table(title="🌐 域名统计", box=box.ROUNDED)
        table.add_column("域名", style="cyan")
        table.add_column("链接数", style="green", justify="right")
        table.add_column("会话数", justify="right")
        table.add_column("最近出现", style="dim")
        for d in results:
            table.add_row(d["domain"], str(d["total_count"]), str(d["channel_count"]), _short(d["last_seen"]))
        console.print(table)
        return

    table = Table(title="🔗 最新链接", box=box.ROUNDED, show_lines=True)
    table.add_column("时间", style="dim", width=16)
    table.add_column("会话", style="cyan", width=15)
    table.add_column("发送者", style="green", width=12)
    table.add_column("链接", style="blue", max_width=60)

    for link in results:
        table.add_row(
            _short(link["date"]),
            escape((link.get("channel_title") or str(link["channel_id"]))[:15]),
            escape((link.get("sender_name") or "?")[:12]),
            escape(link["url"]),
        )
    console.print(table)


# ═══════════════════════════════════════════════════════
# channels — 会话列表
# ═══════════════════════════════════════════════════════


@cli.command()
@click.option("--refresh", is_flag=True, help="先从 Telegram 拉取最新会话列表")
@click.pass_context
def channels(ctx, refresh):
    """📌 列出已知会话"""
    cfg, store = ctx.obj["config"], ctx.obj["store"]
    if refresh:
        _require_config(ctx)

    async def _run():
        async with open_archive(cfg, store, lock=refresh) as service:
            if refresh:
                await _require_login(service)
                await service.refresh_channels_from_dialogs()
            return await service.db.channels.list_channels()

    results = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(results)
        return
    if not results:
        console.print("[yellow]暂无会话记录（请先运行 auth 或 channels --refresh）[/yellow]")
        return

    table = Table(title="📌 会话", box=box.ROUNDED)
    table.add_column("ID", style="dim")
    table.add_column("类型", style="blue")
    table.add_column("名称", style="cyan")
    table.add_column("Username", style="green")
    table.add_column("消息数", justify="right")
    table.add_column("最新消息", style="dim")

    for c in results:
        table.add_row(
            str(c["id"]),
            c["kind"],
            escape(c["title"] or "-"),
            c.get("username") or "-",
            str(c["message_count"]),
            _short(c["last_message_at"]),
        )
    console.print(table)


# ═══════════════════════════════════════════════════════
# send / media — 主动操作
# ═══════════════════════════════════════════════════════


@cli.command()
@click.argument("chat")
@click.argument("text")
@click.pass_context
def send(ctx, chat, text):
    """📤 发送消息 (同时写入归档)"""
    _require_config(ctx)
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store) as service:
            await _require_login(service)
            return await service.send_message(chat, text)

    msg = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json(msg)
    elif msg:
        console.print(f"[green]📤 已发送[/green] {msg['channel_id']}#{msg['message_id']}")


@cli.command()
@click.argument("channel_id", type=int)
@click.argument("message_id", type=int)
@click.option("--dest", "-d", default=None, type=click.Path(file_okay=False), help="保存目录 (默认 <store>/media)")
@click.pass_context
def media(ctx, channel_id, message_id, dest):
    """📎 下载消息附带的媒体"""
    _require_config(ctx)
    cfg, store = ctx.obj["config"], ctx.obj["store"]

    async def _run():
        async with open_archive(cfg, store) as service:
            await _require_login(service)
            return await service.download_media(channel_id, message_id, Path(dest) if dest else None)

    path = _execute(ctx, _run())
    if ctx.obj["json"]:
        _write_json({"path": path})
    else:
        console.print(f"[green]📎 已保存到 {escape(path)}[/green]")


if __name__ == "__main__":
    cli()
