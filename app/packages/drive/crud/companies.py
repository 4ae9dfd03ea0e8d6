from typing import Optional

from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.company import Company


class CRUDCompany(CRUDBase[Company]):
    def get_by_name(self, db: Session, name: str) -> Optional[Company]:
        return self.query(db).filter(Company.name == name).first()

    def list_all(self, db: Session) -> list[Company]:
        return self.query(db).order_by(Company.id.asc()).all()


company_crud = CRUDCompany(Company)
