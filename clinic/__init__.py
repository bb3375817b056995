"""Clinic application for the practice backend.

This package contains models, serializers, services, views and route
registrations for patients, visits, billing, messaging, email templates,
campaigns and Google Calendar synchronization.
"""
