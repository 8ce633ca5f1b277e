#!/usr/bin/env python3
import argparse
import asyncio
import json
import os
import signal
import sys

ROOT = os.path.dirname(os.path.abspath(__file__))

# Allow importing the local core package without installation
REPO_ROOT = os.path.normpath(os.path.join(ROOT, '..'))
CORE_ROOT = os.path.join(REPO_ROOT, 'huginn_core')
if CORE_ROOT not in sys.path:
    sys.path.insert(0, CORE_ROOT)

from huginn_core import __version__
from huginn_core.agent import HuginnAgent
from huginn_core.config import default_config_path, load_config
from huginn_core.errors import AuthError, ConfigError, CredentialStoreError, TransportError
from huginn_core.obs.logging import configure_logging, get_logger
from huginn_core.utils.paths import config_dir, data_dir, log_dir

logger = get_logger('huginn.cli')

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_STARTUP = 2


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str))


def _agent(args):
    config = load_config(args.config)
    configure_logging(config.log_level, to_file=config.log_to_file)
    return HuginnAgent(config)


async def cmd_run(args):
    async with _agent(args) as agent:
        if not await agent.initialize():
            logger.error('Agent is not enrolled; run "enroll --token ..." or configure enrollment_token')
            return EXIT_FAILED
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await agent.start()
        logger.info(f'Huginn agent {__version__} running')
        await stop.wait()
        logger.info('Shutdown signal received')
    return EXIT_OK


async def cmd_enroll(args):
    async with _agent(args) as agent:
        token = args.token or agent.config.enrollment_token
        if not token:
            logger.error('No enrollment token given (--token or enrollment_token in config)')
            return EXIT_FAILED
        cred = await agent.enroll(token, args.serial or agent.config.serial_number)
        _print_json({'enrolled': True, 'agentId': cred.identity, 'expiresAt': cred.expires_at})
    return EXIT_OK


async def cmd_status(args):
    async with _agent(args) as agent:
        agent.auth.load()
        if args.health:
            _print_json(agent.health())
        else:
            _print_json(agent.get_status().to_dict())
    return EXIT_OK


async def cmd_reset(args):
    async with _agent(args) as agent:
        await agent.reset()
        _print_json({'enrolled': False})
    return EXIT_OK


async def cmd_refresh(args):
    async with _agent(args) as agent:
        agent.auth.load()
        cred = await agent.force_refresh()
        _print_json({'agentId': cred.identity, 'expiresAt': cred.expires_at})
    return EXIT_OK


async def cmd_telemetry(args):
    async with _agent(args) as agent:
        agent.auth.load()
        if args.dry_run:
            _print_json(await agent.assembler.collect())
        else:
            await agent.force_telemetry()
            _print_json({'sent': True})
    return EXIT_OK


async def cmd_info(args):
    _print_json({
        'name': 'huginn-agent',
        'version': __version__,
        'config': args.config or default_config_path(),
        'config_dir': config_dir(),
        'data_dir': data_dir(),
        'log_dir': log_dir(),
    })
    return EXIT_OK


def main(argv=None):
    parser = argparse.ArgumentParser(description='Huginn endpoint agent')
    parser.add_argument('--config', help='Path to agent.yml (default: <config dir>/agent.yml)')
    sub = parser.add_subparsers(required=True)

    p_info = sub.add_parser('info', help='Show version and resolved directories')
    p_info.set_defaults(func=cmd_info)

    p_run = sub.add_parser('run', help='Initialize, then run the check-in/telemetry/health loops until SIGINT/SIGTERM')
    p_run.set_defaults(func=cmd_run)

    p_enroll = sub.add_parser('enroll', help='Enroll this device with the management platform')
    p_enroll.add_argument('--token', help='Enrollment token (default: enrollment_token from config)')
    p_enroll.add_argument('--serial', help='Serial number to report instead of the inspected one')
    p_enroll.set_defaults(func=cmd_enroll)

    p_status = sub.add_parser('status', help='Print the agent status as JSON')
    p_status.add_argument('--health', action='store_true', help='Print the healthy/degraded/unhealthy verdict')
    p_status.set_defaults(func=cmd_status)

    p_reset = sub.add_parser('reset', help='Forget the stored credential')
    p_reset.set_defaults(func=cmd_reset)

    p_refresh = sub.add_parser('refresh', help='Refresh the stored credential now')
    p_refresh.set_defaults(func=cmd_refresh)

    p_tel = sub.add_parser('telemetry', help='Send one telemetry report')
    p_tel.add_argument('--dry-run', action='store_true', help='Print the payload instead of sending it')
    p_tel.set_defaults(func=cmd_telemetry)

    args = parser.parse_args(argv)
    try:
        return asyncio.run(args.func(args))
    except (ConfigError, CredentialStoreError) as e:
        logger.error(f'Startup failed: {e}', extra={'error_code': type(e).__name__})
        return EXIT_STARTUP
    except (AuthError, TransportError) as e:
        logger.error(f'{e}', extra={'error_code': type(e).__name__})
        return EXIT_FAILED


if __name__ == '__main__':
    sys.exit(main())
