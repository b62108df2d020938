#!/usr/bin/env python3
"""
Validate configuration before deployment.
Checks required Stripe and identity settings, database connectivity and,
unless ``--offline`` is given, the Stripe API key.
Exit code 0 = OK, 1 = problems detected.
"""
import argparse
import logging
import sys
from typing import List, Optional
from urllib.parse import urlparse

import stripe
from pydantic import ValidationError
from sqlalchemy import text

from .config import Settings
from .db import build_engine

logger = logging.getLogger(__name__)

DEFAULT_SECRETS = ("change-me", "changeme", "secret", "your-secret-key")


class EnvironmentValidator:
    """Validates a Settings instance for production deployment."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.info: List[str] = []

    def validate_all(self, check_external: bool = True) -> bool:
        """Run all validation checks."""
        logger.info("Starting environment validation...")

        self.validate_stripe_settings()
        self.validate_jwt_configuration()
        self.validate_content_settings()
        self.validate_database_connection()
        if check_external:
            self.validate_stripe_api()
        self.validate_security_settings()

        return len(self.errors) == 0

    def validate_stripe_settings(self):
        required = [
            ("STRIPE_SECRET_KEY", self.settings.stripe_secret_key, "checkout sessions cannot be created"),
            ("STRIPE_WEBHOOK_SECRET", self.settings.stripe_webhook_secret, "every webhook will be rejected"),
            ("STRIPE_PRICE_ID", self.settings.stripe_price_id, "checkout has no price to sell"),
        ]
        for var, value, consequence in required:
            if not value:
                self.errors.append(f"Missing required variable {var}: {consequence}")

        if self.settings.stripe_webhook_secret and not self.settings.stripe_webhook_secret.startswith("whsec_"):
            self.warnings.append("STRIPE_WEBHOOK_SECRET does not look like a Stripe signing secret (whsec_...)")
        if self.settings.stripe_secret_key.startswith("sk_test_"):
            self.warnings.append("STRIPE_SECRET_KEY is a test mode key")

    def validate_jwt_configuration(self):
        jwt_secret = self.settings.jwt_secret
        if len(jwt_secret) < 32:
            self.errors.append("JWT_SECRET must be at least 32 characters for security")
        elif jwt_secret in DEFAULT_SECRETS:
            self.errors.append("JWT_SECRET appears to be a default/example value")
        else:
            self.info.append(f"JWT_SECRET length: {len(jwt_secret)} characters")

        if self.settings.jwt_algorithm not in ("HS256", "HS384", "HS512"):
            self.warnings.append(f"JWT_ALGORITHM '{self.settings.jwt_algorithm}' may not be supported")

    def validate_content_settings(self):
        if self.settings.free_days > self.settings.days_per_cycle:
            self.warnings.append(
                f"FREE_DAYS ({self.settings.free_days}) exceeds DAYS_PER_CYCLE ({self.settings.days_per_cycle}); "
                "the whole first cycle is free"
            )

    def validate_database_connection(self):
        database_url = self.settings.database_url
        scheme = urlparse(database_url).scheme.split('+')[0]
        if scheme not in ("postgresql", "postgres"):
            self.warnings.append(f"Database scheme '{scheme}' - expected postgresql in production")

        engine = build_engine(database_url)
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self.info.append("Database connection successful")
        except Exception as e:
            self.errors.append(f"Database connection failed: {str(e)}")
        finally:
            engine.dispose()

    def validate_stripe_api(self):
        if not self.settings.stripe_secret_key:
            return  # Already caught
        try:
            stripe.Account.retrieve(api_key=self.settings.stripe_secret_key)
            self.info.append("Stripe API connectivity verified")
        except stripe.StripeError as e:
            self.errors.append(f"Stripe API test error: {str(e)}")

    def validate_security_settings(self):
        if self.settings.debug:
            self.warnings.append("DEBUG is enabled; disable in production")
        base_url = self.settings.app_base_url
        if base_url and base_url.startswith("http://"):
            self.warnings.append("APP_BASE_URL should use HTTPS in production")
        if not base_url:
            self.warnings.append("APP_BASE_URL not set: checkout redirects follow request headers")

    def print_results(self):
        print("\n===== Environment Validation Report =====\n")
        for title, messages in (("Info", self.info), ("Warnings", self.warnings), ("Errors", self.errors)):
            if messages:
                print(f"{title}:")
                for msg in messages:
                    print(f"  - {msg}")
                print("")
        overall = "PASS" if not self.errors else "FAIL"
        print(f"Overall: {overall}")
        print("")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate cyclegate configuration")
    parser.add_argument("--offline", action="store_true", help="skip the Stripe API check")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        settings = Settings()
    except ValidationError as e:
        print(f"Configuration could not be loaded:\n{e}")
        return 1

    validator = EnvironmentValidator(settings)
    ok = validator.validate_all(check_external=not args.offline)
    validator.print_results()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
