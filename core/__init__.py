"""Core - configuration, logging, events, data model and conversation history"""
