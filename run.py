#!/usr/bin/env python3
"""Backup runner for cron: `python run.py run`"""
from dbkeeper.cli import main

if __name__ == '__main__':
    main()
