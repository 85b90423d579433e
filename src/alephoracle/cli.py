"""
alephoracle/cli.py

Command-line entry points.

    alephoracle oracle -ns images.dpla --rpc http://localhost:8545
    alephoracle publish-raw images.dpla QmF00...
    alephoracle digest statement.cbor

Exit status is 0 on normal shutdown (including SIGINT/SIGTERM) and 1 when
a required endpoint (peer node or ethereum RPC) is unavailable.
"""

import logging
import signal
import sys
from typing import Optional

import click
import trio

from . import multihash
from .config import (
    DEFAULT_CALL_TIMEOUT_MS,
    DEFAULT_MAX_CONCURRENT_EVENTS,
    DEFAULT_NODE_URL,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RPC_URL,
    ENV_PREFIX,
    RETRY_PARAMS,
    OracleConfig,
)
from .errors import InvalidReference, OracleError, StartupError, SubscriptionLost
from .orchestrator import BridgeOrchestrator
from .publication import PublicationClient, format_response

logger = logging.getLogger("alephoracle.cli")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def node_url_option():
    return click.option(
        "--node-url",
        envvar=f"{ENV_PREFIX}NODE_URL",
        default=DEFAULT_NODE_URL,
        show_default=True,
        help="REST API of the local aleph node",
    )


def timeout_option():
    return click.option(
        "--timeout-ms",
        envvar=f"{ENV_PREFIX}CALL_TIMEOUT_MS",
        type=click.IntRange(min=1),
        default=DEFAULT_CALL_TIMEOUT_MS,
        show_default=True,
        help="Timeout for each network call, in milliseconds",
    )


async def stop_on_signal(orchestrator: BridgeOrchestrator, cancel_scope: trio.CancelScope,
                         task_status=trio.TASK_STATUS_IGNORED) -> None:
    """
    Stop the bridge on SIGINT or SIGTERM.

    The first signal stops the watch session and lets in-flight publishes
    finish; a second one cancels everything.
    """
    with trio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        task_status.started()
        async for signum in signals:
            name = signal.Signals(signum).name
            if orchestrator.stopping:
                logger.warning(f"Received {name} again, cancelling")
                cancel_scope.cancel()
                return
            logger.info(f"Received {name}, stopping oracle")
            orchestrator.stop()


async def serve(orchestrator: BridgeOrchestrator) -> None:
    """Run the bridge until it stops or a shutdown signal arrives."""
    failure: Optional[OracleError] = None

    async with trio.open_nursery() as nursery:
        await nursery.start(stop_on_signal, orchestrator, nursery.cancel_scope)
        try:
            await orchestrator.run()
        except OracleError as e:
            failure = e
        finally:
            nursery.cancel_scope.cancel()

    # Raised outside the nursery so callers see it unwrapped
    if failure is not None:
        raise failure


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def main(log_level: str) -> None:
    """Bridge ethereum order events to aleph namespaces."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)


@main.command()
@click.option("--namespace", "-ns", envvar=f"{ENV_PREFIX}NAMESPACE", required=True,
              help="Namespace to act as oracle for")
@click.option("--rpc", envvar=f"{ENV_PREFIX}RPC_URL", default=DEFAULT_RPC_URL, show_default=True,
              help="Ethereum RPC host to connect to")
@click.option("--contract", envvar=f"{ENV_PREFIX}CONTRACT", default=None,
              help="Order contract address to watch")
@click.option("--topic", envvar=f"{ENV_PREFIX}TOPIC", default=None,
              help="Event signature hash of the order placed event")
@node_url_option()
@click.option("--remote-peer", envvar=f"{ENV_PREFIX}REMOTE_PEER", default=None,
              help="Multiaddr of a remote peer to connect to")
@click.option("--dir", "-d", "directory", envvar=f"{ENV_PREFIX}DIRECTORY", default=None,
              help="Directory to connect to (multiaddr)")
@timeout_option()
@click.option("--max-attempts", envvar=f"{ENV_PREFIX}MAX_ATTEMPTS", type=click.IntRange(min=1),
              default=RETRY_PARAMS["max_attempts"], show_default=True,
              help="Publish attempts per event for transient failures")
@click.option("--max-concurrent", envvar=f"{ENV_PREFIX}MAX_CONCURRENT", type=click.IntRange(min=1),
              default=DEFAULT_MAX_CONCURRENT_EVENTS, show_default=True,
              help="Events published at the same time")
@click.option("--poll-interval", envvar=f"{ENV_PREFIX}POLL_INTERVAL",
              type=click.FloatRange(min=0.0, min_open=True),
              default=DEFAULT_POLL_INTERVAL, show_default=True,
              help="Seconds between event polls")
def oracle(
    namespace: str,
    rpc: str,
    contract: Optional[str],
    topic: Optional[str],
    node_url: str,
    remote_peer: Optional[str],
    directory: Optional[str],
    timeout_ms: int,
    max_attempts: int,
    max_concurrent: int,
    poll_interval: float,
) -> None:
    """Start an ethereum oracle."""
    config = OracleConfig(
        namespace=namespace,
        rpc_url=rpc,
        contract_address=contract,
        event_topic=topic,
        node_url=node_url,
        remote_peer=remote_peer,
        directory=directory,
        call_timeout_ms=timeout_ms,
        max_attempts=max_attempts,
        max_concurrent_events=max_concurrent,
        poll_interval=poll_interval,
    )
    try:
        config.validate()
    except OracleError as e:
        raise click.UsageError(str(e))

    orchestrator = BridgeOrchestrator.from_config(config)

    try:
        trio.run(serve, orchestrator)
    except StartupError as e:
        logger.error(f"Error setting up oracle: {e}")
        click.echo(f"Unable to connect to {e.component}: {e.endpoint} ({e.reason})", err=True)
        sys.exit(1)
    except SubscriptionLost as e:
        logger.error(f"Oracle stopped: {e}")
        click.echo(f"Lost connection to ethereum RPC: {e.endpoint} ({e.reason})", err=True)
        sys.exit(1)
    except OracleError as e:
        logger.error(f"Oracle stopped: {e}")
        click.echo(str(e), err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Oracle stopped")
    except BaseExceptionGroup as eg:
        _, errors = eg.split(KeyboardInterrupt)
        if errors is None:
            logger.info("Oracle stopped")
        else:
            logger.error(f"Oracle nursery ExceptionGroup with {len(errors.exceptions)} exception(s):")
            for i, exc in enumerate(errors.exceptions, 1):
                logger.error(f"  [{i}] {type(exc).__name__}: {exc}")
            sys.exit(1)

    stats = orchestrator.get_stats()["watcher"]
    logger.info(
        f"Published {stats['published']} statement(s), "
        f"dropped {stats['dropped_invalid'] + stats['dropped_rejected'] + stats['dropped_exhausted']}"
    )


@main.command("publish-raw")
@click.argument("namespace")
@click.argument("statement_body_id")
@node_url_option()
@timeout_option()
def publish_raw(namespace: str, statement_body_id: str, node_url: str, timeout_ms: int) -> None:
    """
    Publish a statement whose body has already been stored in the node.

    STATEMENT_BODY_ID is the multihash identifier of the statement body.
    """
    try:
        reference = multihash.parse(statement_body_id)
    except InvalidReference as e:
        raise click.BadParameter(str(e), param_hint="STATEMENT_BODY_ID")

    client = PublicationClient(node_url, timeout=timeout_ms / 1000.0)
    try:
        outcome = trio.run(client.publish, namespace, reference)
    finally:
        client.close()

    if not outcome.ok:
        click.echo(outcome.message, err=True)
        sys.exit(1)

    click.echo(format_response(outcome.response))


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--hash", "hash_function", type=click.Choice(sorted(multihash.HASH_FUNCTIONS)),
              default=multihash.DEFAULT_HASH, show_default=True)
def digest(path: str, hash_function: str) -> None:
    """Print the base58 multihash of a file."""
    click.echo(multihash.digest_file(path, hash_function).text)


if __name__ == "__main__":
    main()
