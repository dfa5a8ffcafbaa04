"""Caller authentication backed by Supabase Auth."""
