"""Literature reference model."""

from pydantic import BaseModel, Field


class LiteratureReference(BaseModel):
    """A PubMed article attached to a candidate trial."""

    pmid: str = Field(..., description="PubMed identifier")
    title: str
    authors: list[str] = Field(default_factory=list)
    journal: str | None = None
    publication_date: str | None = None
    url: str

    @classmethod
    def pubmed_url(cls, pmid: str) -> str:
        return f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/"

    def citation(self) -> str:
        """Format as "title (journal, date)"."""
        details = ", ".join(part for part in (self.journal, self.publication_date) if part)
        return f"{self.title} ({details})" if details else self.title
