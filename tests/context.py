"""Imports the modules under test."""
from easy_fgr import correspondence, features, interfaces, registration, spatial, utils
from scripts import run_registration
