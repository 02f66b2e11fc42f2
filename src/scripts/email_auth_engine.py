#!/usr/bin/env python3
"""
email_auth_engine.py

Entry point for the email authentication engine CLI: verify inbound
messages, sign outbound ones, generate DKIM keys, render records and
audit what a domain publishes.

Usage:
    python email_auth_engine.py report example.com
    python email_auth_engine.py verify message.eml --ip 203.0.113.9
"""

from email_auth_engine.cli import main

if __name__ == "__main__":
    main()
