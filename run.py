#!/usr/bin/env python3
"""Backup runner, meant to be invoked by cron or by hand"""
from folderbackup.cli import main

if __name__ == '__main__':
    main()
