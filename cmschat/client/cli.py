import asyncio, json, typer
from typing import List, Optional
import grpc
from grpc import aio
from ..server import codec
from ..server.auth import issue_token
from ..server.config import load_settings
from ..server.repo import ConversationsRepo
from ..server.service import method_path

app = typer.Typer(help="Command line client for the cmschat messaging server")

TokenOption = typer.Option(None, "--token", envvar="CMSCHAT_TOKEN", help="Bearer token of the caller")
HostOption = typer.Option("127.0.0.1", "--host")
PortOption = typer.Option(50051, "--port")


def _metadata(token: Optional[str]):
    return (("authorization", f"Bearer {token}"),) if token else ()


async def _call(host: str, port: int, token: Optional[str], name: str, body: dict) -> dict:
    """Invoke one request/response method and return the decoded reply."""
    async with aio.insecure_channel(f"{host}:{port}") as chan:
        rpc = chan.unary_unary(
            method_path(name),
            request_serializer=codec.encode,
            response_deserializer=codec.decode,
        )
        return await rpc(body, metadata=_metadata(token))


def _run(host: str, port: int, token: Optional[str], name: str, body: dict) -> dict:
    try:
        return asyncio.run(_call(host, port, token, name, body))
    except grpc.aio.AioRpcError as e:
        typer.echo(f"[error] {e.code().name}: {e.details()}", err=True)
        raise typer.Exit(code=1)


def _print_message(m: dict):
    flags = []
    if m.get("deliveredTo"):
        flags.append(f"delivered={','.join(m['deliveredTo'])}")
    if m.get("readBy"):
        flags.append(f"read={','.join(m['readBy'])}")
    suffix = f"  ({' '.join(flags)})" if flags else ""
    typer.echo(f"[{m['createdAt']}] {m['from']}: {m['text']}{suffix}")


@app.command("issue-token")
def issue_token_cmd(user_id: str, ttl: int = typer.Option(7 * 24 * 3600, help="Lifetime in seconds")):
    """Sign a development token for USER_ID with the configured secret."""
    typer.echo(issue_token(load_settings().jwt_secret, user_id, ttl_seconds=ttl))


@app.command("create-conversation")
def create_conversation_cmd(
    participants: List[str],
    title: Optional[str] = typer.Option(None, "--title"),
    group: bool = typer.Option(False, "--group"),
):
    """Create a conversation directly in the server's data directory."""
    repo = ConversationsRepo(load_settings().conversations_path)
    conv = repo.create(participants, title=title, is_group=group)
    typer.echo(conv.id)


@app.command("conversations")
def conversations_cmd(token: Optional[str] = TokenOption, host: str = HostOption, port: int = PortOption):
    """List your conversations, most recently active first."""
    resp = _run(host, port, token, "ListConversations", {})
    if not resp["conversations"]:
        typer.echo("[conversations] None")
    for c in resp["conversations"]:
        name = c.get("title") or ",".join(c["participants"])
        last = c.get("lastMessage")
        preview = f"{last['from']}: {last['text']}" if last else "-"
        typer.echo(f" - {c['id']} {name}  {preview}")


@app.command("history")
def history_cmd(conversation_id: str, token: Optional[str] = TokenOption,
                host: str = HostOption, port: int = PortOption):
    """Show the messages of a conversation (marks them delivered to you)."""
    resp = _run(host, port, token, "ListMessages", {"conversationId": conversation_id})
    for m in resp["messages"]:
        _print_message(m)


@app.command("send")
def send_cmd(conversation_id: str, text: str,
             to: List[str] = typer.Option([], "--to", help="Explicit recipient, repeatable"),
             token: Optional[str] = TokenOption, host: str = HostOption, port: int = PortOption):
    """Send TEXT to a conversation."""
    msg = _run(host, port, token, "SendMessage", {"conversationId": conversation_id, "text": text, "to": to})
    typer.echo(f"[sent] {msg['id']}")


@app.command("read")
def read_cmd(conversation_id: str, token: Optional[str] = TokenOption,
             host: str = HostOption, port: int = PortOption):
    """Mark a whole conversation as read."""
    resp = _run(host, port, token, "MarkConversationRead", {"conversationId": conversation_id})
    typer.echo(f"[read] {resp['modified']} messages marked")


@app.command("read-message")
def read_message_cmd(message_id: str, token: Optional[str] = TokenOption,
                     host: str = HostOption, port: int = PortOption):
    """Mark a single message as read."""
    _run(host, port, token, "MarkMessageRead", {"messageId": message_id})
    typer.echo(f"[read] {message_id}")


@app.command("online")
def online_cmd(user_ids: Optional[List[str]] = typer.Argument(None),
               token: Optional[str] = TokenOption, host: str = HostOption, port: int = PortOption):
    """Show which users are online."""
    body = {"userIds": user_ids} if user_ids else {}
    resp = _run(host, port, token, "WhoIsOnline", body)
    typer.echo(", ".join(resp["online"]) or "[online] Nobody")


async def _listen(host: str, port: int, token: Optional[str], conversations: List[str]):
    async with aio.insecure_channel(f"{host}:{port}") as chan:
        rpc = chan.unary_stream(
            method_path("Subscribe"),
            request_serializer=codec.encode,
            response_deserializer=codec.decode,
        )
        body = {"conversationIds": conversations} if conversations else {}
        async for event in rpc(body, metadata=_metadata(token)):
            typer.echo(f"[{event['type']}] {json.dumps(event['payload'], ensure_ascii=False)}")


@app.command("listen")
def listen_cmd(conversation: List[str] = typer.Option([], "--conversation", help="Only this conversation, repeatable"),
               token: Optional[str] = TokenOption, host: str = HostOption, port: int = PortOption):
    """Print live events until interrupted. Without a token only presence updates arrive."""
    if not token:
        typer.echo("[listen] No token, connecting anonymously", err=True)
    try:
        asyncio.run(_listen(host, port, token, conversation))
    except grpc.aio.AioRpcError as e:
        typer.echo(f"[error] {e.code().name}: {e.details()}", err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        pass

if __name__ == "__main__":
    app()
