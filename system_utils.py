"""
System utilities for shutdown diagnostics

This module collects a snapshot of the running process so that a shutdown
which hits the exit timeout leaves a trace of what was still alive.
"""

import asyncio
import logging
import threading
from datetime import datetime

import psutil


class MicrosecondFormatter(logging.Formatter):
    """Custom formatter that provides millisecond precision timestamps"""
    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created)
        return dt.strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]


def get_system_state(loop=None):
    """Get process state relevant to a stalled shutdown as a dictionary"""
    try:
        proc = psutil.Process()

        children = []
        for child in proc.children(recursive=True):
            try:
                children.append({
                    'pid': child.pid,
                    'name': child.name(),
                    'status': child.status()
                })
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

        connections = [
            {
                'status': conn.status,
                'laddr': f"{conn.laddr.ip}:{conn.laddr.port}" if conn.laddr else None
            }
            for conn in proc.net_connections(kind='inet')
        ]

        pending_tasks = None
        if loop is not None:
            pending_tasks = len([t for t in asyncio.all_tasks(loop) if not t.done()])

        return {
            'process': {
                'pid': proc.pid,
                'status': proc.status(),
                'num_threads': proc.num_threads(),
                'rss_mb': proc.memory_info().rss / 1024 / 1024
            },
            'connections': connections,
            'children': children,
            'threads': [t.name for t in threading.enumerate()],
            'pending_tasks': pending_tasks,
            'timestamp': datetime.now().isoformat()
        }

    except Exception as e:
        return {
            'error': str(e),
            'timestamp': datetime.now().isoformat()
        }


def log_system_state(logger, phase, loop=None):
    """Log the process snapshot at DEBUG level"""
    if not logger.isEnabledFor(logging.DEBUG):
        return

    logger.debug(f"=== SYSTEM STATE: {phase} ===")

    state = get_system_state(loop)
    if 'error' in state:
        logger.error(f"Error getting system state: {state['error']}")
        return

    proc_info = state['process']
    logger.debug(f"PID: {proc_info['pid']}, Status: {proc_info['status']}, RSS={proc_info['rss_mb']:.1f}MB")
    logger.debug(f"Threads: {', '.join(state['threads'])}")
    if state['pending_tasks'] is not None:
        logger.debug(f"Pending asyncio tasks: {state['pending_tasks']}")

    logger.debug(f"Open connections: {len(state['connections'])}")
    for conn in state['connections']:
        logger.debug(f"  {conn['laddr']} ({conn['status']})")

    for child in state['children']:
        logger.debug(f"  Child PID {child['pid']}: {child['name']} ({child['status']})")

    logger.debug(f"=== END SYSTEM STATE: {phase} ===")
