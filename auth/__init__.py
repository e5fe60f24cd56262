"""auth/ -- Registration, sign-in and token lifecycle for the campus logistics backend.

Layer rule: auth/ imports only stdlib, third-party libraries and notify/.
It does NOT import from api/ or core/. api/ imports from auth/, not the
other way around; configuration values are passed in by the assembly code.
"""
