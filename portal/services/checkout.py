from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, EmailStr, field_validator
from sqlalchemy.orm import Session

from portal.config import settings
from portal.metrics import checkout_payments_total
from portal.models import Profile
from portal.services.gateway import GatewayError, MercadoPagoClient, PayerInfo
from portal.services.notifications import NotificationDispatcher
from portal.services.projects import ProjectRepository, ProjectSnapshot
from portal.services.security import only_digits


@dataclass(frozen=True)
class PlanTerms:
    price_minor: int
    deadline_days: int


PLAN_CATALOG: dict[str, PlanTerms] = {
    "Básico": PlanTerms(price_minor=499700, deadline_days=30),
    "Profissional": PlanTerms(price_minor=999700, deadline_days=45),
    "Enterprise": PlanTerms(price_minor=1999700, deadline_days=60),
}


class CheckoutError(Exception):
    def __init__(self, code: str, status_code: int = 500) -> None:
        super().__init__(code)
        self.code = code
        self.status_code = status_code


class CustomerForm(BaseModel):
    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    name: str
    email: EmailStr
    phone: Optional[str] = None
    cpf: Optional[str] = None
    requirements: Optional[str] = None

    @field_validator("name")
    @classmethod
    def require_name(cls, value: str) -> str:
        if not value:
            raise ValueError("name is required")
        return value

    def split_name(self) -> tuple[str, str]:
        parts = self.name.split()
        first = parts[0] if parts else ""
        last = parts[1] if len(parts) > 1 else ""
        return first, last


def deadline_for(plan: str, now: datetime) -> datetime:
    terms = PLAN_CATALOG[plan]
    return now + timedelta(days=terms.deadline_days)


class CheckoutService:
    def __init__(
        self,
        projects: ProjectRepository,
        gateway: MercadoPagoClient,
        notifier: NotificationDispatcher,
        session_factory,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.projects = projects
        self.gateway = gateway
        self.notifier = notifier
        self.session_factory = session_factory
        self.clock = clock
        self.logger = structlog.get_logger().bind(service="checkout")

    def _session(self) -> Session:
        return self.session_factory()  # type: ignore[call-arg]

    @staticmethod
    def _validate_products(products: Any) -> list[str]:
        if not isinstance(products, list) or not products:
            raise CheckoutError("invalid_products", 400)
        cleaned = [str(item).strip() for item in products if str(item).strip()]
        if len(cleaned) != len(products):
            raise CheckoutError("invalid_products", 400)
        return cleaned

    def create_project(
        self,
        user_id: str,
        plan: str,
        products: list[str],
        form: CustomerForm,
        customizations: dict[str, Any] | None = None,
    ) -> ProjectSnapshot:
        if plan not in PLAN_CATALOG:
            raise CheckoutError("invalid_plan", 400)
        products = self._validate_products(products)
        deadline = deadline_for(plan, self.clock())

        project = self.projects.create(
            user_id=user_id,
            name=f"{products[0]} - {plan}",
            description=f"Projeto {plan} incluindo: {', '.join(products)}",
            plan=plan,
            products=products,
            deadline=deadline,
            requirements=form.requirements,
            customizations=customizations,
        )

        metadata = {"plan": plan, "products": products, "deadline": deadline.isoformat()}
        self.notifier.notify(
            user_id,
            "project_created",
            "Projeto Criado",
            f'Seu projeto "{project.name}" foi criado com sucesso. Aguardando confirmação do pagamento.',
            project.id,
            metadata,
        )
        self.notifier.notify_admins(
            "new_project",
            "Novo Projeto",
            f'Um novo projeto "{project.name}" foi criado e aguarda pagamento.',
            project.id,
            {**metadata, "user_id": user_id},
        )
        return project

    def _profile_document(self, user_id: str) -> str | None:
        session = self._session()
        try:
            profile = session.get(Profile, user_id)
            return profile.document if profile is not None else None
        finally:
            session.close()

    def create_payment(
        self,
        user_id: str,
        project_id: str,
        plan: str,
        products: list[str],
        form: CustomerForm,
    ) -> dict[str, Any]:
        """Create the PIX intent for a pending project.

        Plan, payer and gateway problems all surface as ``payment_creation_failed``.
        """

        logger = self.logger.bind(project_id=project_id, plan=plan, user_id=user_id)

        project = self.projects.get_for_user(project_id, user_id)
        if project is None:
            raise CheckoutError("project_not_found", 404)
        if project.status != "pending":
            raise CheckoutError("project_not_pending", 409)

        terms = PLAN_CATALOG.get(plan)
        if terms is None:
            logger.warning("checkout_invalid_plan")
            checkout_payments_total.labels(plan="unknown", outcome="invalid_plan").inc()
            raise CheckoutError("payment_creation_failed")

        products = self._validate_products(products)

        document = only_digits(form.cpf) or only_digits(self._profile_document(user_id))
        if len(document) != 11:
            logger.warning("checkout_invalid_document", length=len(document))
            checkout_payments_total.labels(plan=plan, outcome="invalid_document").inc()
            raise CheckoutError("payment_creation_failed")

        now = self.clock()
        first_name, last_name = form.split_name()
        payer = PayerInfo(
            email=str(form.email),
            first_name=first_name,
            last_name=last_name,
            document=document,
        )
        metadata = {
            "email": str(form.email),
            "plan": plan,
            "products": ",".join(products),
            "customer_name": form.name,
            "customer_email": str(form.email),
            "customer_phone": form.phone,
            "project_id": project_id,
            "user_id": user_id,
            "deadline": deadline_for(plan, now).isoformat(),
        }
        idempotency_key = str(uuid.uuid4())

        try:
            intent = self.gateway.create_intent(
                terms.price_minor,
                payer,
                metadata,
                idempotency_key,
                description=f"Plano {plan} - {', '.join(products)}",
                notification_url=settings.notification_url,
            )
        except GatewayError as exc:
            logger.error("checkout_gateway_failed", error=str(exc), status=exc.status)
            checkout_payments_total.labels(plan=plan, outcome="gateway_error").inc()
            raise CheckoutError("payment_creation_failed") from exc

        if not self.projects.link_payment(project_id, intent.id):
            logger.warning("checkout_link_failed", payment_id=intent.id)
            checkout_payments_total.labels(plan=plan, outcome="not_pending").inc()
            raise CheckoutError("project_not_pending", 409)

        checkout_payments_total.labels(plan=plan, outcome="created").inc()
        logger.info("checkout_payment_created", payment_id=intent.id)
        return {
            "qr_code": intent.qr_code,
            "qr_code_base64": intent.qr_code_base64,
            "payment_id": intent.id,
            "expiration_date": (now + timedelta(minutes=settings.pix_expiration_minutes)).isoformat(),
            "amount": terms.price_minor,
            "project_id": project_id,
        }

    def await_settlement(
        self,
        project_id: str,
        *,
        timeout: float | None = None,
        interval: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> str | None:
        """Poll until the project leaves ``pending``; ``None`` on timeout."""

        timeout = settings.checkout_poll_timeout_seconds if timeout is None else timeout
        interval = settings.checkout_poll_interval_seconds if interval is None else interval
        deadline = monotonic() + timeout
        while True:
            project = self.projects.get(project_id)
            if project is None:
                raise CheckoutError("project_not_found", 404)
            if project.status != "pending":
                return project.status
            if monotonic() >= deadline:
                return None
            sleep(interval)


__all__ = [
    "CheckoutError",
    "CheckoutService",
    "CustomerForm",
    "PLAN_CATALOG",
    "PlanTerms",
    "deadline_for",
]
