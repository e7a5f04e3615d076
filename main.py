import os
import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any

from fastapi import FastAPI, Body, Depends, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import AutoReconnect, ExecutionTimeout, PyMongoError

from accounts import AccountService
from auth import FirebaseVerifier, Identity, bearer_token
from config import Settings
from database import connect, ensure_indexes
from errors import TuitronError
from listings import ApplicationService, ListingService
from payments import PaymentService, StripeGateway
from schemas import (
    ApplicationPayload, ApplicationStatusPayload, CheckoutPayload, ProfilePayload,
    RolePayload, StatusPayload, TuitionPatch, TuitionPayload, TutorPatch, TutorPayload,
)
from tutors import TutorService

logger = logging.getLogger(__name__)


class Services:
    """Everything a request handler needs, built once per process."""

    def __init__(self, settings: Settings, db, verifier, gateway):
        self.settings = settings
        self.db = db
        self.verifier = verifier
        self.accounts = AccountService(db)
        self.tutors = TutorService(db, self.accounts)
        self.listings = ListingService(db, self.accounts)
        self.applications = ApplicationService(
            db, self.accounts, self.listings, status_policy=settings.application_status_policy
        )
        self.payments = PaymentService(db, gateway, self.listings, self.accounts, settings)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(settings: Optional[Settings] = None, db=None, verifier=None, gateway=None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        if getattr(app.state, "services", None) is None:
            client = connect(settings)
            database = client[settings.database_name]
            ensure_indexes(database)
            app.state.services = Services(
                settings,
                database,
                verifier or FirebaseVerifier.from_settings(settings),
                gateway or StripeGateway.from_settings(settings),
            )
            logger.info(f"Connected to {settings.database_name}")
        yield
        if client is not None:
            client.close()

    app = FastAPI(title="Tuitron API", version="1.0.0", lifespan=lifespan)
    app.state.services = Services(settings, db, verifier, gateway) if db is not None else None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    register_routes(app)
    return app


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TuitronError)
    async def tuitron_error(request: Request, exc: TuitronError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(PyMongoError)
    async def database_error(request: Request, exc: PyMongoError):
        logger.exception(f"Database error on {request.method} {request.url.path}")
        if isinstance(exc, (AutoReconnect, ExecutionTimeout)):
            return JSONResponse(status_code=502, content={"detail": "Database unavailable"})
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# --- Dependencies ---
def get_services(request: Request) -> Services:
    return request.app.state.services


def current_identity(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> Identity:
    return services.verifier.verify(bearer_token(authorization))


def register_routes(app: FastAPI) -> None:
    # --- Health ---
    @app.get("/")
    def root():
        return {"name": "Tuitron API", "status": "Tuitron server is running"}

    @app.get("/test")
    def test_database(services: Services = Depends(get_services)):
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
            "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
            "connection_status": "Not Connected",
            "collections": []
        }
        try:
            response["collections"] = services.db.list_collection_names()
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
        except PyMongoError as e:
            response["database"] = f"⚠️ Error {str(e)[:60]}"
        return response

    # --- Users ---
    @app.post("/users")
    def register_user(payload: Optional[Dict[str, Any]] = Body(None), identity: Identity = Depends(current_identity),
                      services: Services = Depends(get_services)):
        # Existing accounts are returned unchanged, so the body is only validated on first registration
        return {"user": services.accounts.register_or_fetch(identity, payload)}

    @app.get("/users")
    def list_users(role: Optional[str] = None, identity: Identity = Depends(current_identity),
                   services: Services = Depends(get_services)):
        return services.accounts.list_accounts(identity.email, role=role)

    @app.get("/users/me")
    def my_account(identity: Identity = Depends(current_identity), services: Services = Depends(get_services)):
        return services.accounts.me(identity.email)

    @app.patch("/users/me")
    def update_my_account(payload: ProfilePayload, identity: Identity = Depends(current_identity),
                          services: Services = Depends(get_services)):
        return services.accounts.update_profile(identity.email, payload)

    @app.get("/users/{email}/role")
    def user_role(email: str, identity: Identity = Depends(current_identity),
                  services: Services = Depends(get_services)):
        return {"role": services.accounts.get_role(email)}

    @app.patch("/users/{user_id}/role")
    def change_user_role(user_id: str, payload: RolePayload, identity: Identity = Depends(current_identity),
                         services: Services = Depends(get_services)):
        return services.accounts.change_role(identity.email, user_id, payload.role)

    @app.delete("/users/{user_id}")
    def delete_user(user_id: str, identity: Identity = Depends(current_identity),
                    services: Services = Depends(get_services)):
        return services.accounts.delete_account(identity.email, user_id)

    # --- Tutors ---
    @app.get("/tutors")
    def list_tutors(status: Optional[str] = None, subject: Optional[str] = None, location: Optional[str] = None,
                    services: Services = Depends(get_services)):
        return services.tutors.query(status=status, subject=subject, location=location)

    @app.get("/tutors/latest")
    def latest_tutors(services: Services = Depends(get_services)):
        return services.tutors.latest()

    @app.post("/tutors", status_code=201)
    def register_tutor(payload: TutorPayload, identity: Identity = Depends(current_identity),
                       services: Services = Depends(get_services)):
        return services.tutors.register(identity.email, payload.model_dump())

    @app.get("/tutors/{tutor_id}")
    def get_tutor(tutor_id: str, services: Services = Depends(get_services)):
        return services.tutors.get(tutor_id)

    @app.patch("/tutors/{tutor_id}")
    def update_tutor(tutor_id: str, payload: TutorPatch, identity: Identity = Depends(current_identity),
                     services: Services = Depends(get_services)):
        return services.tutors.update(identity.email, tutor_id, payload.model_dump(exclude_unset=True))

    @app.patch("/tutors/{tutor_id}/status")
    def set_tutor_status(tutor_id: str, payload: StatusPayload, identity: Identity = Depends(current_identity),
                         services: Services = Depends(get_services)):
        return services.tutors.approve_tutor(identity.email, tutor_id, payload.status)

    @app.delete("/tutors/{tutor_id}")
    def delete_tutor(tutor_id: str, identity: Identity = Depends(current_identity),
                     services: Services = Depends(get_services)):
        return services.tutors.delete(identity.email, tutor_id)

    # --- Tuitions ---
    @app.get("/tuitions")
    def list_tuitions(
        email: Optional[str] = None,
        course: Optional[str] = None,
        subject: Optional[str] = None,
        category: Optional[str] = None,
        method: Optional[str] = None,
        gender: Optional[str] = None,
        location: Optional[str] = None,
        salary_min: Optional[float] = Query(None, alias="salaryMin"),
        salary_max: Optional[float] = Query(None, alias="salaryMax"),
        services: Services = Depends(get_services),
    ):
        return services.listings.query_listings({
            "email": email, "course": course, "subject": subject, "category": category,
            "method": method, "gender": gender, "location": location,
            "salaryMin": salary_min, "salaryMax": salary_max,
        })

    @app.get("/tuitions/latest")
    def latest_tuitions(services: Services = Depends(get_services)):
        return services.listings.latest()

    @app.post("/tuitions", status_code=201)
    def create_tuition(payload: TuitionPayload, identity: Identity = Depends(current_identity),
                       services: Services = Depends(get_services)):
        return services.listings.create_listing(identity, payload)

    @app.get("/tuitions/{tuition_id}")
    def get_tuition(tuition_id: str, services: Services = Depends(get_services)):
        return services.listings.get(tuition_id)

    @app.put("/tuitions/{tuition_id}")
    def update_tuition(tuition_id: str, payload: TuitionPatch, identity: Identity = Depends(current_identity),
                       services: Services = Depends(get_services)):
        return services.listings.update_listing(identity.email, tuition_id, payload.model_dump(exclude_unset=True))

    @app.patch("/tuitions/{tuition_id}/status")
    def set_tuition_status(tuition_id: str, payload: StatusPayload, identity: Identity = Depends(current_identity),
                           services: Services = Depends(get_services)):
        return services.listings.set_status(identity.email, tuition_id, payload.status)

    @app.delete("/tuitions/{tuition_id}")
    def delete_tuition(tuition_id: str, identity: Identity = Depends(current_identity),
                       services: Services = Depends(get_services)):
        return services.listings.delete_listing(identity.email, tuition_id)

    @app.get("/tuitions/{tuition_id}/applications")
    def tuition_applications(tuition_id: str, identity: Identity = Depends(current_identity),
                             services: Services = Depends(get_services)):
        return services.applications.for_tuition(identity.email, tuition_id)

    # --- Applications ---
    @app.post("/applications", status_code=201)
    def apply(payload: ApplicationPayload, identity: Identity = Depends(current_identity),
              services: Services = Depends(get_services)):
        return services.applications.apply_to_tuition(identity, payload)

    @app.get("/applications/my")
    def my_applications(identity: Identity = Depends(current_identity), services: Services = Depends(get_services)):
        return services.applications.my_applications(identity.email)

    @app.patch("/applications/{application_id}")
    def set_application_status(application_id: str, payload: ApplicationStatusPayload,
                               identity: Identity = Depends(current_identity),
                               services: Services = Depends(get_services)):
        return services.applications.set_application_status(
            identity.email, application_id, payload.status or payload.action
        )

    # --- Payments ---
    @app.post("/create-checkout-session")
    def create_checkout_session(payload: CheckoutPayload, identity: Identity = Depends(current_identity),
                                services: Services = Depends(get_services)):
        return services.payments.create_checkout_session(
            identity.email, payload.tuition_id, payload.subject, payload.amount
        )

    @app.patch("/payment-success")
    def payment_success(session_id: str,
                        identity: Identity = Depends(current_identity),
                        services: Services = Depends(get_services)):
        return services.payments.reconcile(session_id)

    @app.get("/payments")
    def list_payments(identity: Identity = Depends(current_identity), services: Services = Depends(get_services)):
        return services.payments.list_payments(identity.email)


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Settings.from_env().port)
